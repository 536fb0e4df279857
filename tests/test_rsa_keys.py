import pytest
from sympy import isprime

from channel_errors import ErrorKind
from number_theory import FastCSPRNG, PrimeChecker, minimal_bytes
from rsa_keys import PUBLIC_EXPONENT, RSAPrivateKey, RSAPublicKey
from rsa_keys import decrypt_RSA, encrypt_RSA, generate_RSA_key


@pytest.fixture(scope='module')
def key():
    result = generate_RSA_key( 256, 256, FastCSPRNG(b'rsa tests') )
    assert result.ok
    return result.value


def test_generated_key_invariants(key):
    assert isprime( key.p ) and isprime( key.q )
    assert key.p.bit_length() == 256
    assert key.q.bit_length() == 256
    assert key.p != key.q
    assert key.n == key.p * key.q
    assert key.e == PUBLIC_EXPONENT
    assert (key.e * key.d) % ((key.p - 1) * (key.q - 1)) == 1


def test_uneven_prime_sizes():
    key = generate_RSA_key( 128, 192, FastCSPRNG(b'uneven') ).value
    assert key.p.bit_length() == 128
    assert key.q.bit_length() == 192


def test_public_key_is_derived_by_value(key):
    public = key.public_key
    assert public == RSAPublicKey( key.n, key.e )
    assert public == RSAPublicKey.from_private( key )
    assert public.bits == key.bits
    assert not hasattr( public, 'd' )


def test_private_key_repr_hides_secrets(key):
    text = repr( key )
    assert str(key.d) not in text
    assert str(key.p) not in text


@pytest.mark.parametrize( 'message', [b'A', b'Anurag', bytes(range(1, 48)), b'\xff' * 60] )
def test_round_trip(key, message):
    cyphertext = encrypt_RSA( message, key.public_key )
    assert cyphertext.ok
    assert cyphertext.value != message

    plaintext = decrypt_RSA( cyphertext.value, key )
    assert plaintext.ok
    assert plaintext.value == message


def test_output_is_the_minimal_encoding(key):
    # leading zero bytes are not preserved
    plaintext = decrypt_RSA( encrypt_RSA(b'\x00\x00\x01\x02', key.public_key).value, key )
    assert plaintext.value == b'\x01\x02'


def test_plaintext_too_large(key):
    result = encrypt_RSA( minimal_bytes(key.n), key.public_key )
    assert result.error is ErrorKind.PLAINTEXT_TOO_LARGE

    result = encrypt_RSA( minimal_bytes(key.n - 1), key.public_key )
    assert result.ok


def test_cyphertext_too_large(key):
    result = decrypt_RSA( minimal_bytes(key.n + 5), key )
    assert result.error is ErrorKind.CIPHERTEXT_TOO_LARGE


def test_sign_with_private_verify_with_public(key):
    signature = encrypt_RSA( b'signed value', key )
    assert signature.ok
    assert decrypt_RSA( signature.value, key.public_key ).value == b'signed value'


def test_key_generation_error_when_exponent_not_invertible():
    # phi(n) is always even, so e = 2 never has an inverse
    result = generate_RSA_key( 64, 64, FastCSPRNG(b'bad e'), PrimeChecker(), e=2 )
    assert not result.ok
    assert result.error is ErrorKind.KEY_GENERATION


def test_unwrap_raises_channel_error():
    from channel_errors import ChannelError

    result = generate_RSA_key( 64, 64, FastCSPRNG(b'bad e'), e=2 )
    with pytest.raises( ChannelError ) as info:
        result.unwrap()
    assert info.value.kind is ErrorKind.KEY_GENERATION
