#!/usr/bin/env python3

##### IMPORTS

from __future__ import annotations

import numpy as np

from channel_errors import ErrorKind, Result

BLOCK_SIZE = 16         # AES's block size, in bytes

SBOX = bytes([
    0x63, 0x7c, 0x77, 0x7b, 0xf2, 0x6b, 0x6f, 0xc5, 0x30, 0x01, 0x67, 0x2b, 0xfe, 0xd7, 0xab, 0x76,
    0xca, 0x82, 0xc9, 0x7d, 0xfa, 0x59, 0x47, 0xf0, 0xad, 0xd4, 0xa2, 0xaf, 0x9c, 0xa4, 0x72, 0xc0,
    0xb7, 0xfd, 0x93, 0x26, 0x36, 0x3f, 0xf7, 0xcc, 0x34, 0xa5, 0xe5, 0xf1, 0x71, 0xd8, 0x31, 0x15,
    0x04, 0xc7, 0x23, 0xc3, 0x18, 0x96, 0x05, 0x9a, 0x07, 0x12, 0x80, 0xe2, 0xeb, 0x27, 0xb2, 0x75,
    0x09, 0x83, 0x2c, 0x1a, 0x1b, 0x6e, 0x5a, 0xa0, 0x52, 0x3b, 0xd6, 0xb3, 0x29, 0xe3, 0x2f, 0x84,
    0x53, 0xd1, 0x00, 0xed, 0x20, 0xfc, 0xb1, 0x5b, 0x6a, 0xcb, 0xbe, 0x39, 0x4a, 0x4c, 0x58, 0xcf,
    0xd0, 0xef, 0xaa, 0xfb, 0x43, 0x4d, 0x33, 0x85, 0x45, 0xf9, 0x02, 0x7f, 0x50, 0x3c, 0x9f, 0xa8,
    0x51, 0xa3, 0x40, 0x8f, 0x92, 0x9d, 0x38, 0xf5, 0xbc, 0xb6, 0xda, 0x21, 0x10, 0xff, 0xf3, 0xd2,
    0xcd, 0x0c, 0x13, 0xec, 0x5f, 0x97, 0x44, 0x17, 0xc4, 0xa7, 0x7e, 0x3d, 0x64, 0x5d, 0x19, 0x73,
    0x60, 0x81, 0x4f, 0xdc, 0x22, 0x2a, 0x90, 0x88, 0x46, 0xee, 0xb8, 0x14, 0xde, 0x5e, 0x0b, 0xdb,
    0xe0, 0x32, 0x3a, 0x0a, 0x49, 0x06, 0x24, 0x5c, 0xc2, 0xd3, 0xac, 0x62, 0x91, 0x95, 0xe4, 0x79,
    0xe7, 0xc8, 0x37, 0x6d, 0x8d, 0xd5, 0x4e, 0xa9, 0x6c, 0x56, 0xf4, 0xea, 0x65, 0x7a, 0xae, 0x08,
    0xba, 0x78, 0x25, 0x2e, 0x1c, 0xa6, 0xb4, 0xc6, 0xe8, 0xdd, 0x74, 0x1f, 0x4b, 0xbd, 0x8b, 0x8a,
    0x70, 0x3e, 0xb5, 0x66, 0x48, 0x03, 0xf6, 0x0e, 0x61, 0x35, 0x57, 0xb9, 0x86, 0xc1, 0x1d, 0x9e,
    0xe1, 0xf8, 0x98, 0x11, 0x69, 0xd9, 0x8e, 0x94, 0x9b, 0x1e, 0x87, 0xe9, 0xce, 0x55, 0x28, 0xdf,
    0x8c, 0xa1, 0x89, 0x0d, 0xbf, 0xe6, 0x42, 0x68, 0x41, 0x99, 0x2d, 0x0f, 0xb0, 0x54, 0xbb, 0x16,
])

INV_SBOX = bytes([
    0x52, 0x09, 0x6a, 0xd5, 0x30, 0x36, 0xa5, 0x38, 0xbf, 0x40, 0xa3, 0x9e, 0x81, 0xf3, 0xd7, 0xfb,
    0x7c, 0xe3, 0x39, 0x82, 0x9b, 0x2f, 0xff, 0x87, 0x34, 0x8e, 0x43, 0x44, 0xc4, 0xde, 0xe9, 0xcb,
    0x54, 0x7b, 0x94, 0x32, 0xa6, 0xc2, 0x23, 0x3d, 0xee, 0x4c, 0x95, 0x0b, 0x42, 0xfa, 0xc3, 0x4e,
    0x08, 0x2e, 0xa1, 0x66, 0x28, 0xd9, 0x24, 0xb2, 0x76, 0x5b, 0xa2, 0x49, 0x6d, 0x8b, 0xd1, 0x25,
    0x72, 0xf8, 0xf6, 0x64, 0x86, 0x68, 0x98, 0x16, 0xd4, 0xa4, 0x5c, 0xcc, 0x5d, 0x65, 0xb6, 0x92,
    0x6c, 0x70, 0x48, 0x50, 0xfd, 0xed, 0xb9, 0xda, 0x5e, 0x15, 0x46, 0x57, 0xa7, 0x8d, 0x9d, 0x84,
    0x90, 0xd8, 0xab, 0x00, 0x8c, 0xbc, 0xd3, 0x0a, 0xf7, 0xe4, 0x58, 0x05, 0xb8, 0xb3, 0x45, 0x06,
    0xd0, 0x2c, 0x1e, 0x8f, 0xca, 0x3f, 0x0f, 0x02, 0xc1, 0xaf, 0xbd, 0x03, 0x01, 0x13, 0x8a, 0x6b,
    0x3a, 0x91, 0x11, 0x41, 0x4f, 0x67, 0xdc, 0xea, 0x97, 0xf2, 0xcf, 0xce, 0xf0, 0xb4, 0xe6, 0x73,
    0x96, 0xac, 0x74, 0x22, 0xe7, 0xad, 0x35, 0x85, 0xe2, 0xf9, 0x37, 0xe8, 0x1c, 0x75, 0xdf, 0x6e,
    0x47, 0xf1, 0x1a, 0x71, 0x1d, 0x29, 0xc5, 0x89, 0x6f, 0xb7, 0x62, 0x0e, 0xaa, 0x18, 0xbe, 0x1b,
    0xfc, 0x56, 0x3e, 0x4b, 0xc6, 0xd2, 0x79, 0x20, 0x9a, 0xdb, 0xc0, 0xfe, 0x78, 0xcd, 0x5a, 0xf4,
    0x1f, 0xdd, 0xa8, 0x33, 0x88, 0x07, 0xc7, 0x31, 0xb1, 0x12, 0x10, 0x59, 0x27, 0x80, 0xec, 0x5f,
    0x60, 0x51, 0x7f, 0xa9, 0x19, 0xb5, 0x4a, 0x0d, 0x2d, 0xe5, 0x7a, 0x9f, 0x93, 0xc9, 0x9c, 0xef,
    0xa0, 0xe0, 0x3b, 0x4d, 0xae, 0x2a, 0xf5, 0xb0, 0xc8, 0xeb, 0xbb, 0x3c, 0x83, 0x53, 0x99, 0x61,
    0x17, 0x2b, 0x04, 0x7e, 0xba, 0x77, 0xd6, 0x26, 0xe1, 0x69, 0x14, 0x63, 0x55, 0x21, 0x0c, 0x7d,
])

RCON = bytes([0x01, 0x02, 0x04, 0x08, 0x10, 0x20, 0x40, 0x80, 0x1b, 0x36])

# the MixColumns matrices, as the first row of a circulant matrix
MIX_FACTORS     = (2, 1, 1, 3)
INV_MIX_FACTORS = (14, 9, 13, 11)

##### METHODS

def galois_mul( x:int, y:int ) -> int:
    """
    Multiply two bytes as polynomials over GF(2^8), reducing by
      x^8 + x^4 + x^3 + x + 1.
    """
    t = 0
    for _ in range(8):
        if y & 1:
            t ^= x

        carry = x & 0x80
        x = (x << 1) & 0xff
        if carry:
            x ^= 0x1b
        y >>= 1

    return t

# lookup tables for the state transformations, so each step is one numpy index
_SBOX_TABLE     = np.frombuffer( SBOX, dtype=np.uint8 )
_INV_SBOX_TABLE = np.frombuffer( INV_SBOX, dtype=np.uint8 )
_GF_TABLES      = { f: np.array([galois_mul(x, f) for x in range(256)], dtype=np.uint8) \
        for f in set(MIX_FACTORS + INV_MIX_FACTORS) }

def xor( a:bytes, b:bytes ) -> bytes:
    """
    Bit-wise exclusive-or two byte sequences. If the two bytes objects differ in
       length, pad with zeros.
    """
    assert type(a) in [bytes,bytearray]
    assert type(b) in [bytes,bytearray]

    if len(a) > len(b):
        a, b = b, a

    result = bytearray(b)       # take advantage of implicit zero padding
    for i, x in enumerate(a):
        result[i] ^= x
    return bytes(result)

def to_state( block:bytes ) -> np.ndarray:
    """Load a 16-byte block into the 4x4 state matrix, filling column by column."""
    assert len(block) == BLOCK_SIZE
    return np.frombuffer( bytes(block), dtype=np.uint8 ).reshape(4,4).T.copy()

def from_state( state:np.ndarray ) -> bytes:
    """The inverse of to_state()."""
    return state.T.tobytes()

def sub_bytes( state:np.ndarray, inv:bool=False ) -> np.ndarray:
    return (_INV_SBOX_TABLE if inv else _SBOX_TABLE)[state]

def shift_rows( state:np.ndarray, inv:bool=False ) -> np.ndarray:
    """Rotate row r of the state left by r places (right, for the inverse)."""
    out = state.copy()
    for r in range(1, 4):
        out[r] = np.roll( state[r], r if inv else -r )
    return out

def mix_columns( state:np.ndarray, inv:bool=False ) -> np.ndarray:
    """
    Multiply each column by the circulant MixColumns matrix over GF(2^8). Row
      k of np.roll(state, k) lines up s[j-k] against output row j, which is what
      the k-th factor multiplies.
    """
    out = np.zeros_like( state )
    for k, factor in enumerate(INV_MIX_FACTORS if inv else MIX_FACTORS):
        out ^= _GF_TABLES[factor][ np.roll(state, k, axis=0) ]
    return out

def expand_key( key:bytes ) -> Result:
    """
    Expand a raw AES key into its round-key schedule, FIPS-197 style. Keys of
      any multiple of eight bytes, sixteen or more, are accepted; the number of
      rounds grows with the key (Nr = Nk + 6).

    PARAMETERS
    ==========
    key: The raw key, as bytes.

    RETURNS
    =======
    A Result holding 16*(Nr+1) bytes of round keys, round 0 first, or
      INVALID_KEY_LENGTH.
    """
    assert type(key) in [bytes,bytearray]

    if (len(key) < BLOCK_SIZE) or (len(key) & 0x07):
        return Result.fail( ErrorKind.INVALID_KEY_LENGTH, f'{len(key)}-byte key' )

    n_words  = len(key) >> 2
    n_rounds = n_words + 6

    words = [ bytes(key[i:i+4]) for i in range(0, len(key), 4) ]
    for i in range(n_words, (n_rounds + 1) << 2):

        temp = words[-1]
        if i % n_words == 0:
            temp = bytes( SBOX[x] for x in temp[1:] + temp[:1] )    # RotWord, then SubWord
            temp = xor( temp, bytes([RCON[(i // n_words) - 1], 0, 0, 0]) )
        elif (n_words > 6) and (i % n_words == 4):
            temp = bytes( SBOX[x] for x in temp )

        words.append( xor(words[i - n_words], temp) )

    return Result.success( b''.join(words) )

def round_key( schedule:bytes, index:int ) -> np.ndarray:
    """Extract the index-th round key from a schedule, as a state matrix."""
    return to_state( schedule[index*BLOCK_SIZE:(index+1)*BLOCK_SIZE] )

def encrypt_block( block:bytes, schedule:bytes ) -> bytes:
    """
    Run the forward cipher over a single block.

    PARAMETERS
    ==========
    block: Exactly sixteen bytes of plaintext.
    schedule: The output of expand_key().

    RETURNS
    =======
    Sixteen bytes of cyphertext.
    """
    assert len(block) == BLOCK_SIZE
    assert (len(schedule) % BLOCK_SIZE) == 0

    n_rounds = (len(schedule) // BLOCK_SIZE) - 1

    state = to_state( block ) ^ round_key( schedule, 0 )
    for rnd in range(1, n_rounds + 1):
        state = shift_rows( sub_bytes(state) )
        if rnd < n_rounds:              # the last round skips MixColumns
            state = mix_columns( state )
        state ^= round_key( schedule, rnd )

    return from_state( state )

def decrypt_block( block:bytes, schedule:bytes ) -> bytes:
    """Run the inverse cipher over a single block. See encrypt_block()."""
    assert len(block) == BLOCK_SIZE
    assert (len(schedule) % BLOCK_SIZE) == 0

    n_rounds = (len(schedule) // BLOCK_SIZE) - 1

    state = to_state( block ) ^ round_key( schedule, n_rounds )
    for rnd in range(n_rounds - 1, -1, -1):
        state = sub_bytes( shift_rows(state, True), True )
        state ^= round_key( schedule, rnd )
        if rnd > 0:
            state = mix_columns( state, True )

    return from_state( state )

def encrypt_CBC( plaintext:bytes, key:bytes, iv:bytes ) -> Result:
    """
    Encrypt a block-aligned buffer with AES in cypher block chaining mode.

    PARAMETERS
    ==========
    plaintext: The bytes to encrypt. Must be a positive multiple of BLOCK_SIZE
      long, so pad() it first.
    key: The raw AES key.
    iv: The initialization vector, BLOCK_SIZE bytes.

    RETURNS
    =======
    A Result holding the cyphertext, the same length as the plaintext. A
      misaligned buffer gives INVALID_PADDING, a bad key INVALID_KEY_LENGTH.
    """
    assert type(plaintext) in [bytes,bytearray]
    assert len(iv) == BLOCK_SIZE

    if (len(plaintext) == 0) or (len(plaintext) % BLOCK_SIZE):
        return Result.fail( ErrorKind.INVALID_PADDING, f'{len(plaintext)} bytes is not block-aligned' )

    schedule = expand_key( key )
    if not schedule.ok:
        return schedule

    chain = bytes(iv)
    output = []
    for i in range(0, len(plaintext), BLOCK_SIZE):
        chain = encrypt_block( xor(plaintext[i:i+BLOCK_SIZE], chain), schedule.value )
        output.append( chain )

    return Result.success( b''.join(output) )

def decrypt_CBC( cyphertext:bytes, key:bytes, iv:bytes ) -> Result:
    """
    Reverse encrypt_CBC(). The chaining value is always the received
      cyphertext block, never the recovered plaintext.
    """
    assert type(cyphertext) in [bytes,bytearray]
    assert len(iv) == BLOCK_SIZE

    if (len(cyphertext) == 0) or (len(cyphertext) % BLOCK_SIZE):
        return Result.fail( ErrorKind.INVALID_PADDING, f'{len(cyphertext)} bytes is not block-aligned' )

    schedule = expand_key( key )
    if not schedule.ok:
        return schedule

    chain = bytes(iv)
    output = []
    for i in range(0, len(cyphertext), BLOCK_SIZE):
        block = bytes( cyphertext[i:i+BLOCK_SIZE] )
        output.append( xor(decrypt_block(block, schedule.value), chain) )
        chain = block

    return Result.success( b''.join(output) )

def pad( buffer:bytes, block_size:int=BLOCK_SIZE ) -> bytes:
    """
    PKCS7-pad a buffer. A full block of padding is added when the buffer is
      already aligned, so the output is always strictly longer than the input.

    EXAMPLE
    =======

    >> pad( b'hello' )
    b'hello\\x0b\\x0b\\x0b\\x0b\\x0b\\x0b\\x0b\\x0b\\x0b\\x0b\\x0b'

    """
    assert type(buffer) in [bytes,bytearray]
    assert 0 < block_size < 256

    pad_byte = block_size - (len(buffer) % block_size)
    return bytes(buffer) + bytes([pad_byte] * pad_byte)

def check_invalid( buffer:bytes, block_size:int=BLOCK_SIZE ) -> bool:
    """
    Return True if the buffer does NOT carry valid PKCS7 padding: it isn't a
      positive multiple of the block size, its last byte is zero or longer than
      the buffer, or the trailing pad bytes don't all match.
    """
    assert type(buffer) in [bytes,bytearray]
    assert block_size > 0

    if (len(buffer) == 0) or (len(buffer) % block_size):
        return True

    pad_byte = buffer[-1]
    if (pad_byte == 0) or (pad_byte > len(buffer)):
        return True

    return any( x != pad_byte for x in buffer[-pad_byte:] )

def unpad( buffer:bytes, block_size:int=BLOCK_SIZE ) -> Result:
    """
    Strip PKCS7 padding.

    RETURNS
    =======
    A Result holding the unpadded bytes, or INVALID_PADDING if check_invalid()
      rejects the buffer.
    """
    if check_invalid( buffer, block_size ):
        return Result.fail( ErrorKind.INVALID_PADDING, 'bad PKCS7 padding' )

    return Result.success( bytes(buffer[:-buffer[-1]]) )
