#!/usr/bin/env python3

##### IMPORTS

from __future__ import annotations

import socket
from string import hexdigits
from threading import Lock
from typing import Optional

from channel_errors import ErrorKind, Result

DELIMITER      = b'\n'
MAX_LINE_BYTES = 64 << 20       # refuse to buffer more than this waiting for a delimiter

_HEX = frozenset( hexdigits )

##### METHODS

def encode_frame( data:bytes ) -> str:
    """
    Encode a byte buffer as lowercase hexadecimal, two digits per byte, most
      significant nibble first.

    EXAMPLE
    =======

    >> encode_frame( b'\\x00\\xab' )
    '00ab'

    """
    assert type(data) in [bytes,bytearray]
    return bytes(data).hex()

def decode_frame( text:str ) -> Result:
    """
    Reverse encode_frame().

    PARAMETERS
    ==========
    text: A string of hex digits, two per byte.

    RETURNS
    =======
    A Result holding the decoded bytes. An odd-length frame, or one holding
      anything but hex digits, is INVALID_PADDING.
    """
    assert type(text) is str

    if len(text) & 1:
        return Result.fail( ErrorKind.INVALID_PADDING, f'odd-length frame ({len(text)} characters)' )
    if not _HEX.issuperset( text ):
        return Result.fail( ErrorKind.INVALID_PADDING, 'frame holds non-hex characters' )

    return Result.success( bytes.fromhex(text) )

def create_socket( ip:str, port:int, listen:bool=False ) -> Optional[socket.socket]:
    """Create a TCP/IP socket at the specified port, and do the setup
       necessary to turn it into a connecting or receiving socket.

    PARAMETERS
    ==========
    ip: A string representing the IP address to connect/bind to.
    port: An integer representing the port to connect/bind to. Zero picks
       a free port when listening.
    listen: A boolean that flags whether or not to set the socket up
       for connecting or receiving.

    RETURNS
    =======
    If successful, a socket object that's been prepared according to
       the instructions. Otherwise, return None.
    """
    assert type(ip) == str
    assert type(port) == int

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)

    try:
        if listen:
            sock.setsockopt( socket.SOL_SOCKET, socket.SO_REUSEADDR, 1 )
            sock.bind( (ip, port) )
            sock.listen()
        else:
            sock.connect( (ip, port) )

        return sock
    except OSError:
        sock.close()
        return None

def send( sock:socket.socket, data:bytes ) -> int:
    """Send the provided data across the given socket, retrying until
       either a) all data has been sent, or b) the socket closes.

    RETURNS
    =======
    The number of bytes sent. If this value is less than len(data),
       the socket is dead plus an unknown amount of the data was transmitted.
    """
    assert type(data) == bytes

    sent = 0
    while sent < len(data):
        try:
            out = sock.send( data[sent:] )
        except OSError:
            return sent

        if out <= 0:
            return sent
        sent += out

    return sent

def close_sock( sock ):
    """A helper to close sockets cleanly."""
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass                # already disconnected
    sock.close()
    return None

##### CLASSES

class FrameSocket:
    """
    A connected socket carrying one hex-encoded frame per line. Sends are
      serialized by a lock, so a sender and a receiver thread can share one.
    """

    def __init__(self, sock:socket.socket, max_line:int=MAX_LINE_BYTES):
        assert max_line > 0

        self._sock = sock
        self._buffer = bytearray()
        self._max_line = max_line
        self._send_lock = Lock()
        self.frames_sent = 0
        self.frames_received = 0

    @property
    def sock(self) -> socket.socket:
        return self._sock

    def send_line(self, text:str) -> bool:
        """Send one line of text. Returns False if the socket died part way."""
        data = text.encode('ascii') + DELIMITER
        with self._send_lock:
            return send( self._sock, data ) == len(data)

    def receive_line(self) -> Result:
        """
        Block until a full line arrives.

        RETURNS
        =======
        A Result holding the line without its delimiter. CONNECTION_CLOSED if
          the peer closed the stream first, FRAME_TOO_LONG if the line grew
          past max_line characters. The connection is unusable after either.
        """
        scanned = 0
        while True:
            end = self._buffer.find( DELIMITER, scanned )
            if end >= 0:
                break

            scanned = len(self._buffer)
            if scanned > self._max_line:
                return Result.fail( ErrorKind.FRAME_TOO_LONG, \
                        f'no delimiter within {self._max_line} characters' )
            try:
                chunk = self._sock.recv( 1 << 16 )
            except OSError:
                return Result.fail( ErrorKind.CONNECTION_CLOSED, 'socket error' )
            if chunk == b'':
                return Result.fail( ErrorKind.CONNECTION_CLOSED, 'peer closed the connection' )
            self._buffer += chunk

        line = bytes( self._buffer[:end] )
        del self._buffer[:end + 1]
        if len(line) > self._max_line:
            return Result.fail( ErrorKind.FRAME_TOO_LONG, f'{len(line)}-character line' )

        # non-ASCII bytes become U+FFFD, which decode_frame() then rejects
        return Result.success( line.decode('ascii', errors='replace').rstrip('\r') )

    def send_frame(self, data:bytes) -> bool:
        ok = self.send_line( encode_frame(data) )
        if ok:
            self.frames_sent += 1
        return ok

    def receive_frame(self) -> Result:
        """
        Receive one frame and decode it. The errors of receive_line() pass
          through; INVALID_PADDING if the frame was not valid hex.
        """
        line = self.receive_line()
        if not line.ok:
            return line

        self.frames_received += 1
        return decode_frame( line.value )

    def close(self):
        close_sock( self._sock )
