#!/usr/bin/env python3

##### IMPORTS

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

##### CLASSES

class ErrorKind(Enum):
    """
    Every way a secure channel session can fail. All of them are terminal for
      the current connection.
    """
    INVALID_PADDING      = 'InvalidPadding'       # malformed/tampered ciphertext or frame
    INVALID_KEY_LENGTH   = 'InvalidKeyLength'     # AES key not a multiple of 8 bytes, or too short
    PLAINTEXT_TOO_LARGE  = 'PlaintextTooLarge'    # RSA integer >= n
    CIPHERTEXT_TOO_LARGE = 'CiphertextTooLarge'
    KEY_GENERATION       = 'KeyGenerationError'   # e not invertible mod phi(n)
    NO_INVERSE           = 'NoInverse'
    CONNECTION_CLOSED    = 'ConnectionClosed'     # the peer hung up mid-handshake
    FRAME_TOO_LONG       = 'FrameTooLong'         # a line outgrew the receive buffer

    def __str__(self):
        return self.value


class ChannelError(Exception):
    """
    Raised only at the edges (worker boundary, command line) when a failed
      Result has to stop the current connection.
    """

    def __init__(self, kind:ErrorKind, detail:str=''):
        self.kind = kind
        self.detail = detail
        super().__init__( f'{kind}: {detail}' if detail else str(kind) )


@dataclass(frozen=True)
class Result:
    """
    The outcome of a fallible operation: either a value, or the kind of error
      that stopped it. Each layer checks the error of the layer below and passes
      it along untouched.

    EXAMPLE
    =======

    >> r = Result.fail( ErrorKind.NO_INVERSE )
    >> r.ok
    False
    >> Result.success( 42 ).value
    42

    """
    value: Any = None
    error: Optional[ErrorKind] = None
    detail: str = ''

    @property
    def ok(self) -> bool:
        return self.error is None

    @staticmethod
    def success( value:Any ) -> Result:
        return Result( value )

    @staticmethod
    def fail( kind:ErrorKind, detail:str='' ) -> Result:
        assert isinstance(kind, ErrorKind)
        return Result( None, kind, detail )

    def unwrap(self) -> Any:
        """Return the value, or raise a ChannelError if this is a failure."""
        if not self.ok:
            raise ChannelError( self.error, self.detail )
        return self.value
