#!/usr/bin/env python3

##### IMPORTS

from __future__ import annotations

from hashlib import shake_256
from os import urandom
from threading import Lock
from typing import Optional

from Crypto.Cipher import AES
from sympy import isprime

from channel_errors import ErrorKind, Result

# the odd primes below ~750, used to cheaply sieve out candidates before
#  handing them to the real primality test
prime_list = [3]
target = 128

while len(prime_list) < target:

    cand = prime_list[-1] + 2
    while not isprime(cand):
        cand += 2

    prime_list.append( cand )

##### CLASSES

class FastCSPRNG:
    """
    A fast cryptographically-secure pseudo-random number generator: AES in
      counter mode, keyed from a hash of the seed. One of these is created per
      process and handed to everything that needs randomness, so it is safe to
      share between threads.
    """

    def __init__(self, seed:Optional[bytes]=None):
        """
        Create and initialize a FastCSPRNG.

        PARAMETERS
        ==========
        seed: A bytes object to use as a seed. Optional, the default seeds from a cryptographically-secure source.
        """

        self._counter = 0                   # what to encrypt
        self._buffer = b''
        self._block_bits = 128              # AES's block size, in bits
        self._block_bytes = self._block_bits >> 3
        self._lock = Lock()

        if type(seed) is not bytes:         # sensible default
            seed = urandom(32)

        self._seed = shake_256( seed ).digest( 16 )    # compensate for seeds that are too long or short
        self._generator = AES.new( self._seed, AES.MODE_ECB ).encrypt

    def _inc(self):
        self._buffer += self._generator( self._counter.to_bytes(self._block_bytes,'big') )
        self._counter += 1
        self._counter &= (1 << self._block_bits) - 1     # ensure the conversion to bytes always works

    @property
    def bytes_generated(self):
        """
        Return the number of bytes generated, as an integer. Not necessarily the same as the number of bytes returned!
        """
        return self._counter * self._block_bytes

    def get(self, b:int) -> bytes:
        """
        Return 'b' bytes of cryptographically-secure pseudo-random data.
        """
        assert type(b) is int
        assert b > 0

        with self._lock:
            while len(self._buffer) < b:
                self._inc()

            retVal = self._buffer[:b]
            self._buffer = self._buffer[b:]     # save unneeded values for future use

        return retVal


class PrimeChecker:
    """
    A thin wrapper around sympy.isprime() that only exists to gather statistics on the number of times
      it is called.
    """

    def __init__(self):

        self._count = 0

    @property
    def count(self):
        return self._count

    def isprime(self, x:int) -> bool:
        """
        Check if the given integer, x, is prime.
        """
        self._count += 1
        return isprime( x )


##### METHODS

def int_to_bytes( value:int, length:int ) -> bytes:
    """Convert the given integer into a bytes object with the specified
       number of bytes. Uses network byte order.
    """
    assert type(value) == int
    assert length > 0

    return value.to_bytes( length, 'big' )

def bytes_to_int( value:bytes ) -> int:
    """Convert the given bytes object into an integer. Uses network
       byte order.
    """
    assert type(value) == bytes
    return int.from_bytes( value, 'big' )

def minimal_bytes( value:int ) -> bytes:
    """
    The shortest big-endian encoding of a non-negative integer. Zero still
      takes up one byte.
    """
    assert type(value) is int
    assert value >= 0

    return value.to_bytes( max(1, (value.bit_length() + 7) >> 3), 'big' )

def mod_pow( base:int, exponent:int, modulus:int ) -> int:
    """
    Calculate base**exponent mod modulus by left-to-right square-and-multiply.

    PARAMETERS
    ==========
    base: The integer to exponentiate.
    exponent: A non-negative integer.
    modulus: A positive integer.

    RETURNS
    =======
    An integer in the range [0, modulus).
    """
    assert type(exponent) is int
    assert exponent >= 0
    assert type(modulus) is int
    assert modulus > 0

    if modulus == 1:
        return 0

    base %= modulus
    result = 1
    for bit in bin(exponent)[2:]:
        result = (result * result) % modulus
        if bit == '1':
            result = (result * base) % modulus

    return result

def mod_inverse( a:int, m:int ) -> Result:
    """
    Find the inverse of a modulo m with the extended Euclidean algorithm.

    PARAMETERS
    ==========
    a: The integer to invert.
    m: The modulus, a positive integer.

    RETURNS
    =======
    A Result holding the inverse in [0, m), or the NO_INVERSE error if
      gcd(a, m) is not 1.
    """
    assert type(a) is int
    assert type(m) is int
    assert m > 0

    # (remainder, coefficient of a) pairs, shifted along each step
    r = (a % m, m)
    s = (1, 0)

    while r[1] != 0:
        q = r[0] // r[1]
        r, s = map( lambda x: (x[1], x[0] - q*x[1]), [r,s] )

    if r[0] != 1:
        return Result.fail( ErrorKind.NO_INVERSE, f'gcd is {r[0]}' )
    return Result.success( s[0] % m )

def next_prime( n:int, pc:PrimeChecker ) -> int:
    """
    Return the smallest prime that is greater than or equal to n.

    PARAMETERS
    ==========
    n: The starting point of the search.
    pc: A helper for checking if an integer is prime.
    """
    assert type(n) is int

    if n <= 2:
        return 2

    cand = n | 1
    while True:

        # sieve out some known-bad values before checking primality
        for p in prime_list:
            if cand == p:
                return cand
            if cand % p == 0:
                break
        else:
            if pc.isprime( cand ):
                return cand

        cand += 2

def random_prime( bits:int, rng:FastCSPRNG, pc:PrimeChecker ) -> int:
    """
    Find a random prime that is exactly "bits" bits long. A random odd value
      with its top bit set is drawn, then the search walks up to the next prime;
      if that walk runs past the bit length, the draw is discarded and tried again.

    PARAMETERS
    ==========
    bits: The number of bits the prime requires to represent it. Must be at
      least two.
    rng: A helper object for generating cryptographically-secure randomness.
    pc: A helper for checking if an integer is prime.

    RETURNS
    =======
    A prime meeting the above specifications.
    """
    assert type(bits) is int
    assert bits >= 2

    byte_len = (bits + 7) >> 3
    excess   = (byte_len << 3) - bits

    while True:
        cand  = bytes_to_int( rng.get(byte_len) ) >> excess     # exactly "bits" random bits
        cand |= (1 << (bits-1)) | 1                             # fix the length, force oddness

        prime = next_prime( cand, pc )
        if prime.bit_length() == bits:
            return prime
