#!/usr/bin/env python3
"""
A hybrid-encryption secure channel. The client ships a fresh RSA public key,
  the server answers with an AES key and IV encrypted under it, and from then
  on every line is PKCS7-padded, AES-CBC encrypted and sent as hex.
"""
##### IMPORTS

from __future__ import annotations

import argparse
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields
import json
import logging
import socket
from sys import exit, stderr
from threading import BoundedSemaphore, Event, Lock
from typing import Callable, Iterable, Iterator, Optional

from aes_cbc import BLOCK_SIZE, decrypt_CBC, encrypt_CBC, pad, unpad
from channel_errors import ChannelError, ErrorKind, Result
from number_theory import FastCSPRNG, PrimeChecker, bytes_to_int, int_to_bytes, minimal_bytes
from rsa_keys import RSAPublicKey, decrypt_RSA, encrypt_RSA, generate_RSA_key
from wire import FrameSocket, create_socket, decode_frame, encode_frame

log_server  = logging.getLogger( 'Server' )
log_client  = logging.getLogger( 'Client' )
log_program = logging.getLogger( 'Program' )

EXIT_SENTINEL = 'exit'
MAX_DROPPED_ZEROS = 7        # leading zero bytes the key material may lose in transit

##### CLASSES

@dataclass
class ChannelParameters:
    """
    Collect every tunable value of the channel, for both ends. This makes it much
      easier to pass configuration into and out of functions.

    EXAMPLE
    =======

    >> cp = ChannelParameters( port=4318 )
    >> cp.key_bytes
    32
    >> cp.p_bits + cp.q_bits
    2048

    """
    ip:   str = '0.0.0.0'     # the IP address to bind or connect to
    port: int = 3180

    key_bytes:  int = 32        # AES key length; the IV adds one block on top
    block_size: int = BLOCK_SIZE
    p_bits:     int = 1024      # sizes of the client's RSA primes
    q_bits:     int = 1024

    max_workers:    int = 16        # concurrent sessions the server will run
    accept_timeout: float = 0.5     # how often the server checks for a stop request

    verbose: bool = False

    @property
    def material_bytes(self) -> int:
        """The size of the key material sent during the handshake."""
        return self.key_bytes + self.block_size

    def clone(self) -> ChannelParameters:
        return ChannelParameters( **{f.name: getattr(self, f.name) for f in fields(self)} )

    def sanitize(self) -> ChannelParameters:
        """
        Ensure every value is sane, quietly restoring defaults for any that are
          not. Returns self, for chaining.
        """
        defaults = ChannelParameters()

        if (self.key_bytes < 16) or (self.key_bytes > 256) or (self.key_bytes & 0x07):
            self.key_bytes = defaults.key_bytes
        if (self.p_bits < 64) or (self.p_bits > 8192):
            self.p_bits = defaults.p_bits
        if (self.q_bits < 64) or (self.q_bits > 8192):
            self.q_bits = defaults.q_bits
        if self.max_workers < 1:
            self.max_workers = defaults.max_workers
        if self.accept_timeout <= 0:
            self.accept_timeout = defaults.accept_timeout
        if not (0 <= self.port < 65536):
            self.port = defaults.port

        self.block_size = BLOCK_SIZE            # not negotiable
        return self

    @staticmethod
    def read(file) -> Optional[ChannelParameters]:
        """
        Read in ChannelParameters from a JSON file. Unknown keys are ignored,
          missing ones take their default.

        PARAMETERS
        ==========
        file: A file-like object to read text from.

        RETURNS
        =======
        A ChannelParameters object, if the input could be read, or None otherwise.
        """
        try:
            t = json.load( file )
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        if type(t) is not dict:
            return None

        retVal = ChannelParameters()
        for f in fields(retVal):
            if f.name not in t:
                continue
            expected = type( getattr(retVal, f.name) )
            value = t[f.name]
            if (expected is float) and (type(value) is int):
                value = float(value)
            if type(value) is not expected:
                return None
            setattr( retVal, f.name, value )

        return retVal

    def write(self, file) -> bool:
        """
        Write out ChannelParameters to a file as JSON.

        RETURNS
        =======
        True if successful, false otherwise.
        """
        try:
            json.dump( {f.name: getattr(self, f.name) for f in fields(self)}, file, indent=2 )
        except (OSError, TypeError):
            return False

        return True


@dataclass(frozen=True)
class SessionKeys:
    """
    The symmetric key material of one connection: the AES key and the IV.
      Every message of the session restarts the CBC chain from this same IV.
    """
    key: bytes = field(repr=False)
    iv:  bytes = field(repr=False)

    @staticmethod
    def from_material( material:bytes, key_bytes:int ) -> SessionKeys:
        assert len(material) == key_bytes + BLOCK_SIZE
        return SessionKeys( material[:key_bytes], material[key_bytes:] )

    @property
    def material(self) -> bytes:
        return self.key + self.iv


class SecureChannelServer:
    """
    Accept connections one at a time and run each session on a bounded pool of
      worker threads. Every worker owns its own key material; nothing is shared
      between sessions except the random number generator, which locks itself.
      stop() ends the accept loop, disconnects every live session and waits for
      the workers to finish.
    """

    def __init__(self, params:ChannelParameters, rng:FastCSPRNG, \
            deliver:Optional[Callable[[tuple,bytes],None]]=None):

        self.params = params.clone()
        self._rng = rng
        self._deliver = deliver if deliver is not None else print_message

        self._sock = None
        self._executor = None
        self._slots = BoundedSemaphore( self.params.max_workers )
        self._stop = Event()
        self._stopped = Event()
        self._lock = Lock()
        self._channels = set()
        self.sessions_started = 0
        self.sessions_failed = 0

    @property
    def address(self) -> Optional[tuple[str,int]]:
        """The (IP, port) actually bound, handy when binding to port zero."""
        return None if self._sock is None else self._sock.getsockname()[:2]

    @property
    def active_sessions(self) -> int:
        with self._lock:
            return len(self._channels)

    def bind(self) -> bool:
        """Create the listening socket. Returns False if that failed."""
        self._sock = create_socket( self.params.ip, self.params.port, listen=True )
        if self._sock is None:
            log_server.error( 'could not listen on %s:%d.', self.params.ip, self.params.port )
            return False

        self._sock.settimeout( self.params.accept_timeout )
        log_server.info( 'server listening at %s:%d', *self.address )
        return True

    def serve_forever(self) -> bool:
        """
        Run the accept loop until stop() is called. Blocks the calling thread.

        RETURNS
        =======
        False if the server could not start listening, True after a clean stop.
        """
        if (self._sock is None) and not self.bind():
            self._stopped.set()
            return False

        self._executor = ThreadPoolExecutor( max_workers=self.params.max_workers, \
                thread_name_prefix='session' )
        try:
            while not self._stop.is_set():

                # only accept once a worker is free to take the connection
                if not self._slots.acquire( timeout=self.params.accept_timeout ):
                    continue

                try:
                    client, address = self._sock.accept()
                except socket.timeout:
                    self._slots.release()
                    continue
                except OSError:
                    self._slots.release()
                    if not self._stop.is_set():
                        log_server.error( 'listening socket failed, shutting down.' )
                    break

                client.settimeout( None )
                log_server.info( 'got connection from %s:%d.', *address[:2] )

                # registered here, so a stop() from now on will shut it down
                channel = FrameSocket( client )
                with self._lock:
                    self._channels.add( channel )
                    self.sessions_started += 1
                self._executor.submit( self._serve_client, channel, address )

        finally:
            self._shutdown()

        return True

    def stop(self, wait:bool=True, timeout:Optional[float]=None):
        """Ask the server to stop accepting and drain in-flight sessions."""
        self._stop.set()
        if self._executor is None:          # never started
            self._shutdown()
        if wait:
            self._stopped.wait( timeout )

    def _shutdown(self):

        self._stop.set()
        if self._sock is not None:
            self._sock.close()

        # unblock any worker sitting in recv()
        with self._lock:
            channels = list(self._channels)
        for channel in channels:
            try:
                channel.sock.shutdown( socket.SHUT_RDWR )
            except OSError:
                pass        # the peer got there first

        if self._executor is not None:
            self._executor.shutdown( wait=True )
        log_server.info( 'server closed!' )
        self._stopped.set()

    def _serve_client(self, channel:FrameSocket, address:tuple):
        """One session, from handshake to disconnect. This is the error boundary."""
        try:
            keys = server_handshake( channel, self.params, self._rng ).unwrap()
            count = receive_messages( channel, keys, \
                    lambda message: self._deliver(address, message), self._stop ).unwrap()
            log_server.info( 'connection from %s:%d closed after %d message(s).', address[0], address[1], count )

        except ChannelError as e:
            with self._lock:
                self.sessions_failed += 1
            log_server.error( 'session with %s:%d aborted, %s', address[0], address[1], e )

        except Exception:
            with self._lock:
                self.sessions_failed += 1
            log_server.exception( 'session with %s:%d crashed', address[0], address[1] )

        finally:
            with self._lock:
                self._channels.discard( channel )
            channel.close()
            self._slots.release()


class UsageParser(argparse.ArgumentParser):
    """argparse, but usage errors exit with status 1."""

    def error(self, message):
        self.print_usage( stderr )
        print( f'{self.prog}: error: {message}', file=stderr )
        exit( 1 )


##### METHODS

def print_message( address:tuple, message:bytes ):
    """The default way the server shows what it received."""
    print( f'message: {message.decode("utf-8", errors="replace")}\n', flush=True )

def generate_key_material( key_bytes:int, rng:FastCSPRNG ) -> Result:
    """
    Draw a fresh AES key plus one block of IV.

    PARAMETERS
    ==========
    key_bytes: Length of the AES key. Must be a multiple of eight, at least
      one block long.
    rng: The process-wide randomness source.

    RETURNS
    =======
    A Result holding SessionKeys, or INVALID_KEY_LENGTH.
    """
    assert type(key_bytes) is int
    assert isinstance(rng, FastCSPRNG)

    if (key_bytes < BLOCK_SIZE) or (key_bytes & 0x07):
        return Result.fail( ErrorKind.INVALID_KEY_LENGTH, f'{key_bytes}-byte key requested' )

    return Result.success( SessionKeys.from_material(rng.get(key_bytes + BLOCK_SIZE), key_bytes) )

def client_handshake( channel:FrameSocket, params:ChannelParameters, rng:FastCSPRNG, \
        pc:Optional[PrimeChecker]=None ) -> Result:
    """
    Run the key exchange from the client's side: generate an RSA key, send the
      modulus then the exponent as two frames, and decrypt the key material the
      server answers with. Key generation is slow and happens right here.

    PARAMETERS
    ==========
    channel: A FrameSocket connected to the server.
    params: Supplies the prime sizes and the expected AES key length.
    rng: The process-wide randomness source.
    pc: Optionally, a prime checker to gather statistics with.

    RETURNS
    =======
    A Result holding the SessionKeys. Any failure leaves the socket open; the
      caller decides how to close it.
    """
    assert isinstance(channel, FrameSocket)

    if pc is None:
        pc = PrimeChecker()

    log_client.info( 'generating rsa key ...' )
    result = generate_RSA_key( params.p_bits, params.q_bits, rng, pc )
    if not result.ok:
        return result
    private = result.value
    public = private.public_key
    log_client.info( 'generated %d-bit rsa key!', private.bits )
    log_client.debug( 'ran %d primality tests', pc.count )
    log_client.debug( 'public key n = <%s>', encode_frame(minimal_bytes(public.n)) )

    log_client.info( 'sharing public rsa key ...' )
    for value in [public.n, public.e]:
        if not channel.send_frame( minimal_bytes(value) ):
            return Result.fail( ErrorKind.CONNECTION_CLOSED, 'could not send the public key' )
    log_client.info( 'shared public rsa key!' )

    log_client.info( 'receiving aes key ...' )
    frame = channel.receive_frame()
    if not frame.ok:
        return frame

    material = decrypt_RSA( frame.value, private )
    if not material.ok:
        return material

    # the minimal integer encoding drops leading zero bytes, so put them back.
    #  Key lengths step by eight bytes, so a shortfall of eight or more means the
    #  server picked a different key length.
    expected = params.key_bytes + BLOCK_SIZE
    if not (expected - MAX_DROPPED_ZEROS <= len(material.value) <= expected):
        return Result.fail( ErrorKind.INVALID_KEY_LENGTH, \
                f'expected {expected} bytes of key material, got {len(material.value)}' )
    if len(material.value) < expected:
        log_client.debug( 'restoring %d leading zero byte(s) of key material', expected - len(material.value) )
    keys = SessionKeys.from_material( int_to_bytes(bytes_to_int(material.value), expected), params.key_bytes )

    log_client.info( 'received aes key!' )
    return Result.success( keys )

def server_handshake( channel:FrameSocket, params:ChannelParameters, rng:FastCSPRNG ) -> Result:
    """
    Run the key exchange from the server's side: read the client's public key
      (modulus frame, then exponent frame), draw new key material and send it
      back encrypted under that key.

    RETURNS
    =======
    A Result holding the SessionKeys for this connection.
    """
    assert isinstance(channel, FrameSocket)

    log_server.info( 'receiving public rsa key ...' )
    values = []
    for _ in range(2):
        frame = channel.receive_frame()
        if not frame.ok:
            return frame
        values.append( bytes_to_int(frame.value) )

    public = RSAPublicKey( *values )
    log_server.info( 'received %d-bit public rsa key!', public.bits )

    log_server.info( 'generating aes key ...' )
    keys = generate_key_material( params.key_bytes, rng )
    if not keys.ok:
        return keys

    log_server.info( 'sharing aes key ...' )
    cyphertext = encrypt_RSA( keys.value.material, public )
    if not cyphertext.ok:
        return cyphertext

    if not channel.send_frame( cyphertext.value ):
        return Result.fail( ErrorKind.CONNECTION_CLOSED, 'could not send the aes key' )
    log_server.info( 'shared aes key!' )

    return keys

def seal_message( message:bytes, keys:SessionKeys ) -> Result:
    """Pad, encrypt, and hex-encode one message. The Result holds the frame text."""
    assert type(message) is bytes

    cyphertext = encrypt_CBC( pad(message, BLOCK_SIZE), keys.key, keys.iv )
    if not cyphertext.ok:
        return cyphertext

    return Result.success( encode_frame(cyphertext.value) )

def open_message( frame:str, keys:SessionKeys ) -> Result:
    """Reverse seal_message(): hex-decode, decrypt, and strip the padding."""
    data = decode_frame( frame )
    if not data.ok:
        return data

    plaintext = decrypt_CBC( data.value, keys.key, keys.iv )
    if not plaintext.ok:
        return plaintext

    return unpad( plaintext.value, BLOCK_SIZE )

def send_messages( channel:FrameSocket, keys:SessionKeys, lines:Iterable[str], \
        sentinel:str=EXIT_SENTINEL ) -> Result:
    """
    The sending half of a session: seal and send each line until the sentinel
      line shows up or the lines run out.

    RETURNS
    =======
    A Result holding the number of messages sent, or the error that ended
      the session early.
    """
    count = 0
    for line in lines:
        if line == sentinel:
            break

        frame = seal_message( line.encode('utf-8'), keys )
        if not frame.ok:
            return frame

        if not channel.send_line( frame.value ):
            return Result.fail( ErrorKind.CONNECTION_CLOSED, f'peer went away after {count} message(s)' )
        count += 1

    return Result.success( count )

def receive_messages( channel:FrameSocket, keys:SessionKeys, deliver:Callable[[bytes],None], \
        stop:Optional[Event]=None ) -> Result:
    """
    The receiving half of a session: read frames until the peer disconnects,
      handing each decrypted message to deliver().

    RETURNS
    =======
    A Result holding the number of messages delivered when the connection
      closes normally, or the error of the first frame that failed.
    """
    count = 0
    while (stop is None) or (not stop.is_set()):

        line = channel.receive_line()
        if line.error is ErrorKind.CONNECTION_CLOSED:
            break
        if not line.ok:
            return line

        plaintext = open_message( line.value, keys )
        if not plaintext.ok:
            return plaintext

        deliver( plaintext.value )
        count += 1

    return Result.success( count )

def prompt_lines( prompt:str='message: ' ) -> Iterator[str]:
    """Read lines from the terminal until end of input."""
    print( f"(send '{EXIT_SENTINEL}' to close connection)" )
    while True:
        try:
            yield input( f'\n{prompt}' )
        except EOFError:
            return

def run_client( params:ChannelParameters, rng:FastCSPRNG, lines:Iterable[str] ) -> Result:
    """
    Connect, run the handshake, then send lines until told to stop. The socket
      is always closed before this returns.

    RETURNS
    =======
    A Result holding the number of messages sent.
    """
    log_client.info( 'connecting to server at %s:%d...', params.ip, params.port )
    sock = create_socket( params.ip, params.port, listen=False )
    if sock is None:
        return Result.fail( ErrorKind.CONNECTION_CLOSED, f'could not connect to {params.ip}:{params.port}' )
    log_client.info( 'connection complete!' )

    channel = FrameSocket( sock )
    try:
        keys = client_handshake( channel, params, rng )
        if not keys.ok:
            return keys

        return send_messages( channel, keys.value, lines )
    finally:
        channel.close()
        log_client.info( 'connection closed!' )

def configure_logging( verbose:bool ):
    logging.basicConfig( level=logging.DEBUG if verbose else logging.INFO, \
            format='%(name)s: %(message)s' )

def build_parser( description:str, with_actions:bool=False ) -> argparse.ArgumentParser:
    """The command line shared by both ends; the combined script adds the action flags."""

    cmdline = UsageParser( description=description )
    cmdline.add_argument( 'port', type=int, \
        help='The port to listen on (server) or connect to (client).' )

    if with_actions:
        methods = cmdline.add_argument_group( 'ACTIONS', "The two roles this program can play." )
        roles = methods.add_mutually_exclusive_group( required=True )
        roles.add_argument( '--server', action='store_true', \
            help='Listen for connections and print every message received.' )
        roles.add_argument( '--client', action='store_true', \
            help='Connect to a server and send lines typed on the terminal.' )

    methods = cmdline.add_argument_group( 'OPTIONS', "Modify the defaults used for the above actions." )

    methods.add_argument( '--addr', metavar='IP', type=str, \
        help='The IP address to bind to or connect to. Defaults to 0.0.0.0.' )
    methods.add_argument( '--key_bytes', type=int, \
        help='The AES key length, in bytes. Must be a multiple of 8 and at least 16.' )
    methods.add_argument( '--p_bits', type=int, \
        help='The size of the first RSA prime, in bits.' )
    methods.add_argument( '--q_bits', type=int, \
        help='The size of the second RSA prime, in bits.' )
    methods.add_argument( '--max_workers', type=int, \
        help='The most sessions the server runs at once.' )
    methods.add_argument( '--config', metavar='FILE', type=argparse.FileType('rt'), \
        help='A JSON file of channel parameters. Command-line options win over it.' )
    methods.add_argument( '-v', '--verbose', action='store_true', \
        help="Be more verbose about what is happening." )

    return cmdline

def parameters_from_args( args:argparse.Namespace ) -> Optional[ChannelParameters]:
    """Merge the config file (if any) with the command line."""

    params = ChannelParameters()
    if args.config is not None:
        params = ChannelParameters.read( args.config )
        args.config.close()
        if params is None:
            return None

    params.port = args.port
    for attr, value in [('ip', args.addr), ('key_bytes', args.key_bytes), ('p_bits', args.p_bits), \
            ('q_bits', args.q_bits), ('max_workers', args.max_workers)]:
        if value is not None:
            setattr( params, attr, value )
    params.verbose = params.verbose or args.verbose

    return params.sanitize()

def _serve( params:ChannelParameters, rng:FastCSPRNG ) -> int:

    server = SecureChannelServer( params, rng )
    if not server.bind():
        return 1

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        log_program.info( 'interrupted, draining sessions.' )
        server.stop()

    return 0

def _connect( params:ChannelParameters, rng:FastCSPRNG ) -> int:

    try:
        count = run_client( params, rng, prompt_lines() ).unwrap()
    except ChannelError as e:
        log_client.error( '%s', e )
        return 1
    except KeyboardInterrupt:
        return 0

    log_client.debug( 'sent %d message(s).', count )
    return 0

def _run( argv:Optional[list[str]], description:str, role:Optional[str] ) -> int:

    args = build_parser( description, with_actions=(role is None) ).parse_args( argv )
    if role is None:
        role = 'server' if args.server else 'client'

    if (args.port < 0) or (args.port > 65535):
        print( f'Program: {args.port} is not a valid port. Quitting.', file=stderr )
        return 1

    params = parameters_from_args( args )
    if params is None:
        print( 'Program: could not read the configuration file. Quitting.', file=stderr )
        return 1

    configure_logging( params.verbose )

    # one randomness source for the whole process
    rng = FastCSPRNG()

    return _serve( params, rng ) if role == 'server' else _connect( params, rng )

def server_main( argv:Optional[list[str]]=None ) -> int:
    """Entry point for `secure-channel-server <port>`."""
    return _run( argv, "Serve encrypted sessions.", 'server' )

def client_main( argv:Optional[list[str]]=None ) -> int:
    """Entry point for `secure-channel-client <port>`."""
    return _run( argv, "Send encrypted messages to a server.", 'client' )


##### MAIN

if __name__ == '__main__':

    exit( _run(None, "Run one end of a hybrid RSA/AES secure channel.", None) )
