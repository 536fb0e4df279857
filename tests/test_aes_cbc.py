import numpy as np
import pytest
from Crypto.Cipher import AES

from aes_cbc import BLOCK_SIZE, INV_SBOX, SBOX
from aes_cbc import decrypt_CBC, decrypt_block, encrypt_CBC, encrypt_block, expand_key
from aes_cbc import from_state, galois_mul, mix_columns, shift_rows, sub_bytes, to_state, xor
from channel_errors import ErrorKind
from number_theory import FastCSPRNG

FIPS_PLAINTEXT = bytes.fromhex( '00112233445566778899aabbccddeeff' )


def test_sboxes_are_inverses():
    assert sorted( SBOX ) == list( range(256) )
    assert all( INV_SBOX[SBOX[x]] == x for x in range(256) )


@pytest.mark.parametrize( 'x,y,expected', [
    (0x57, 0x83, 0xc1),
    (0x57, 0x13, 0xfe),
    (0x57, 0x01, 0x57),
    (0x00, 0xff, 0x00),
])
def test_galois_mul(x, y, expected):
    assert galois_mul( x, y ) == expected
    assert galois_mul( y, x ) == expected


def test_state_is_column_major():
    block = bytes( range(16) )
    state = to_state( block )
    assert state[1, 0] == 1         # second byte is row 1 of column 0
    assert state[0, 1] == 4
    assert from_state( state ) == block


def test_shift_rows_rotates_each_row_left_by_its_index():
    state = to_state( bytes(range(16)) )
    shifted = shift_rows( state )
    for r in range(4):
        assert list( shifted[r] ) == list( np.roll(state[r], -r) )
    assert np.array_equal( shift_rows(shifted, True), state )


def test_mix_columns_known_column():
    # the classic test column: db 13 53 45 -> 8e 4d a1 bc
    state = to_state( bytes.fromhex('db135345' * 4) )
    mixed = from_state( mix_columns(state) )
    assert mixed == bytes.fromhex( '8e4da1bc' * 4 )
    assert from_state( mix_columns(mix_columns(state), True) ) == bytes.fromhex( 'db135345' * 4 )


def test_sub_bytes_round_trip():
    state = to_state( bytes(range(0, 256, 16)) )
    assert np.array_equal( sub_bytes(sub_bytes(state), True), state )


def test_key_expansion_fips_appendix_a1():
    schedule = expand_key( bytes.fromhex('2b7e151628aed2a6abf7158809cf4f3c') )
    assert schedule.ok
    assert len( schedule.value ) == 176
    assert schedule.value[16:32] == bytes.fromhex( 'a0fafe1788542cb123a339392a6c7605' )
    assert schedule.value[-16:] == bytes.fromhex( 'd014f9a8c9ee2589e13f0cc8b6630ca6' )


@pytest.mark.parametrize( 'key_len,schedule_len', [(16, 176), (24, 208), (32, 240), (40, 272)] )
def test_schedule_length(key_len, schedule_len):
    assert len( expand_key(bytes(key_len)).value ) == schedule_len


def test_key_expansion_is_deterministic():
    key = FastCSPRNG( b'schedule' ).get( 32 )
    assert expand_key( key ).value == expand_key( bytes(key) ).value


@pytest.mark.parametrize( 'key_len', [0, 8, 15, 17, 20, 28] )
def test_invalid_key_length(key_len):
    result = expand_key( bytes(key_len) )
    assert result.error is ErrorKind.INVALID_KEY_LENGTH

    result = encrypt_CBC( bytes(16), bytes(key_len), bytes(16) )
    assert result.error is ErrorKind.INVALID_KEY_LENGTH


@pytest.mark.parametrize( 'key_len,expected', [
    (16, '69c4e0d86a7b0430d8cdb78070b4c55a'),
    (24, 'dda97ca4864cdfe06eaf70a0ec0d7191'),
    (32, '8ea2b7ca516745bfeafc49904b496089'),
])
def test_block_cipher_fips_appendix_c(key_len, expected):
    schedule = expand_key( bytes(range(key_len)) ).value

    cyphertext = encrypt_block( FIPS_PLAINTEXT, schedule )
    assert cyphertext.hex() == expected
    assert decrypt_block( cyphertext, schedule ) == FIPS_PLAINTEXT


@pytest.mark.parametrize( 'key_len', [16, 24, 32] )
@pytest.mark.parametrize( 'blocks', [1, 2, 7] )
def test_cbc_matches_pycryptodome(key_len, blocks):
    rng = FastCSPRNG( f'cbc {key_len} {blocks}'.encode() )
    key, iv, plaintext = rng.get(key_len), rng.get(BLOCK_SIZE), rng.get(blocks * BLOCK_SIZE)

    cyphertext = encrypt_CBC( plaintext, key, iv )
    assert cyphertext.ok
    assert cyphertext.value == AES.new( key, AES.MODE_CBC, iv ).encrypt( plaintext )

    recovered = decrypt_CBC( cyphertext.value, key, iv )
    assert recovered.ok
    assert recovered.value == plaintext


def test_cbc_chains_on_cyphertext():
    rng = FastCSPRNG( b'chain' )
    key, iv = rng.get(16), rng.get(16)
    plaintext = bytes( 3 * BLOCK_SIZE )         # identical blocks

    cyphertext = encrypt_CBC( plaintext, key, iv ).value
    blocks = [cyphertext[i:i+16] for i in range(0, len(cyphertext), 16)]
    assert len( set(blocks) ) == 3

    # decrypting any later block only needs the cyphertext block before it
    assert decrypt_CBC( blocks[2], key, blocks[1] ).value == bytes(16)


def test_wrong_iv_only_damages_the_first_block():
    rng = FastCSPRNG( b'iv' )
    key, iv, plaintext = rng.get(16), rng.get(16), rng.get(48)

    cyphertext = encrypt_CBC( plaintext, key, iv ).value
    recovered = decrypt_CBC( cyphertext, key, bytes(16) ).value
    assert recovered[:16] != plaintext[:16]
    assert recovered[16:] == plaintext[16:]


@pytest.mark.parametrize( 'length', [0, 1, 15, 17, 33] )
def test_cbc_rejects_misaligned_buffers(length):
    assert encrypt_CBC( bytes(length), bytes(16), bytes(16) ).error is ErrorKind.INVALID_PADDING
    assert decrypt_CBC( bytes(length), bytes(16), bytes(16) ).error is ErrorKind.INVALID_PADDING


def test_xor_pads_the_shorter_input():
    assert xor( b'\x0f\xf0', b'\xff' ) == b'\xf0\xf0'
    assert xor( b'\x01', b'\x01\x02\x03' ) == b'\x00\x02\x03'
