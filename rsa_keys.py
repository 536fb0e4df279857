#!/usr/bin/env python3

##### IMPORTS

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from channel_errors import ErrorKind, Result
from number_theory import FastCSPRNG, PrimeChecker, bytes_to_int, minimal_bytes
from number_theory import mod_inverse, mod_pow, random_prime

PUBLIC_EXPONENT = 65537

##### CLASSES

@dataclass(frozen=True)
class RSAPublicKey:
    """
    The public half of an RSA key. Holds no reference back to the private key,
      so it can be shipped across the wire by value.

    EXAMPLE
    =======

    >> pub = RSAPublicKey( 3233 )
    >> pub.e
    65537

    """
    n: int
    e: int = PUBLIC_EXPONENT

    @staticmethod
    def from_private( key:RSAPrivateKey ) -> RSAPublicKey:
        return RSAPublicKey( key.n, key.e )

    @property
    def bits(self) -> int:
        return self.n.bit_length()


@dataclass(frozen=True)
class RSAPrivateKey:
    """
    A full RSA key. Invariants: p and q are prime, n = p*q, and
      e*d = 1 mod (p-1)(q-1).
    """
    p: int
    q: int
    n: int
    e: int
    d: int

    @property
    def public_key(self) -> RSAPublicKey:
        return RSAPublicKey.from_private( self )

    @property
    def bits(self) -> int:
        return self.n.bit_length()

    def __repr__(self):
        # keep the secret values out of log lines and tracebacks
        return f'RSAPrivateKey(bits={self.bits}, e={self.e})'


##### METHODS

def generate_RSA_key( p_bits:int, q_bits:int, rng:FastCSPRNG, \
        pc:Optional[PrimeChecker]=None, e:int=PUBLIC_EXPONENT ) -> Result:
    """
    Generate a fresh RSA key from two random primes.

    PARAMETERS
    ==========
    p_bits, q_bits: The exact bit lengths of the two primes.
    rng: The process-wide randomness source.
    pc: A prime checker, handy for counting how many tests were run. A new
      one is made if not given.
    e: The public exponent.

    RETURNS
    =======
    A Result holding an RSAPrivateKey, or KEY_GENERATION if e has no inverse
      modulo (p-1)(q-1). That is rare, and the caller should draw again; it is
      not retried here.
    """
    assert type(p_bits) is int
    assert type(q_bits) is int
    assert p_bits >= 2 and q_bits >= 2
    assert isinstance(rng, FastCSPRNG)

    if pc is None:
        pc = PrimeChecker()

    p = random_prime( p_bits, rng, pc )
    q = random_prime( q_bits, rng, pc )
    while q == p:
        q = random_prime( q_bits, rng, pc )

    phi_N = (p-1)*(q-1)
    inverse = mod_inverse( e, phi_N )
    if not inverse.ok:
        return Result.fail( ErrorKind.KEY_GENERATION, f'e={e} is not invertible ({inverse.error})' )

    return Result.success( RSAPrivateKey( p, q, p*q, e, inverse.value ) )

def _exponent_for( key:Union[RSAPublicKey,RSAPrivateKey] ) -> int:
    """Pick d for private keys and e for public ones."""
    if isinstance(key, RSAPrivateKey):
        return key.d
    return key.e

def encrypt_RSA( message:bytes, key:Union[RSAPublicKey,RSAPrivateKey] ) -> Result:
    """
    Textbook RSA encryption of a byte buffer. With a public key this raises
      the message to e; handed a private key it uses d instead, which is the
      raw signing primitive.

    PARAMETERS
    ==========
    message: The bytes to encrypt, read as one unsigned big-endian integer.
    key: Either half of an RSA key.

    RETURNS
    =======
    A Result holding the minimal big-endian encoding of the cyphertext, or
      PLAINTEXT_TOO_LARGE if the message's integer value is not below n. Note the
      output can be shorter than the input, as leading zeros are dropped.
    """
    assert type(message) is bytes
    assert isinstance(key, (RSAPublicKey,RSAPrivateKey))

    pt = bytes_to_int( message )
    if pt >= key.n:
        return Result.fail( ErrorKind.PLAINTEXT_TOO_LARGE, f'{pt.bit_length()}-bit plaintext, {key.bits}-bit modulus' )

    return Result.success( minimal_bytes( mod_pow(pt, _exponent_for(key), key.n) ) )

def decrypt_RSA( cyphertext:bytes, key:Union[RSAPublicKey,RSAPrivateKey] ) -> Result:
    """
    Reverse encrypt_RSA(). A private key decrypts with d; a public key applies
      e, which is how a raw signature is checked.

    RETURNS
    =======
    A Result holding the minimal encoding of the plaintext integer, or
      CIPHERTEXT_TOO_LARGE if the cyphertext's integer value is not below n.
    """
    assert type(cyphertext) is bytes
    assert isinstance(key, (RSAPublicKey,RSAPrivateKey))

    ct = bytes_to_int( cyphertext )
    if ct >= key.n:
        return Result.fail( ErrorKind.CIPHERTEXT_TOO_LARGE, f'{ct.bit_length()}-bit cyphertext, {key.bits}-bit modulus' )

    return Result.success( minimal_bytes( mod_pow(ct, _exponent_for(key), key.n) ) )
