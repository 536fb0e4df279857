import socket
from threading import Thread

import pytest

from channel_errors import ErrorKind
from wire import FrameSocket, create_socket, decode_frame, encode_frame


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    yield FrameSocket(a), b
    a.close()
    b.close()


def test_encode_is_lowercase_hex():
    assert encode_frame( b'\x00\xab\xff\x10' ) == '00abff10'
    assert len( encode_frame(bytes(37)) ) == 74


def test_decode_reverses_encode():
    data = bytes( range(256) )
    assert decode_frame( encode_frame(data) ).value == data
    assert decode_frame( '' ).value == b''
    assert decode_frame( 'ABff' ).value == b'\xab\xff'


@pytest.mark.parametrize( 'text', ['abc', '0', 'zz', '0x12', 'ab cd', '+f'] )
def test_decode_rejects_malformed_frames(text):
    result = decode_frame( text )
    assert not result.ok
    assert result.error is ErrorKind.INVALID_PADDING


def test_frames_travel_one_per_line(pair):
    channel, other = pair
    peer = FrameSocket( other )

    assert channel.send_frame( b'first' )
    assert channel.send_frame( b'' )
    assert channel.send_frame( b'third' )

    assert peer.receive_frame().value == b'first'
    assert peer.receive_frame().value == b''
    assert peer.receive_frame().value == b'third'
    assert channel.frames_sent == 3
    assert peer.frames_received == 3


def test_line_split_across_reads(pair):
    channel, other = pair
    other.sendall( b'6869' )
    other.sendall( b'7468657265\r\n6f6b\n' )

    assert channel.receive_frame().value == b'hithere'
    assert channel.receive_frame().value == b'ok'


def test_closed_stream(pair):
    channel, other = pair
    other.sendall( b'abcd' )        # no delimiter before the close
    other.shutdown( socket.SHUT_WR )

    result = channel.receive_frame()
    assert result.error is ErrorKind.CONNECTION_CLOSED


def test_non_ascii_line_is_rejected(pair):
    channel, other = pair
    other.sendall( b'ab\xffcd\n' )
    assert channel.receive_frame().error is ErrorKind.INVALID_PADDING


def test_create_socket_listen_and_connect():
    server = create_socket( '127.0.0.1', 0, listen=True )
    assert server is not None
    port = server.getsockname()[1]

    client = create_socket( '127.0.0.1', port )
    assert client is not None
    conn, _ = server.accept()

    FrameSocket( client ).send_frame( b'ping' )
    assert FrameSocket( conn ).receive_frame().value == b'ping'

    for s in [conn, client, server]:
        s.close()


def test_create_socket_refused():
    server = create_socket( '127.0.0.1', 0, listen=True )
    port = server.getsockname()[1]
    server.close()

    assert create_socket( '127.0.0.1', port ) is None


def test_overlong_line_is_an_error():
    a, b = socket.socketpair()
    channel = FrameSocket( a, max_line=16 )

    try:
        b.sendall( b'00' * 8 + b'\n' )          # exactly at the limit
        b.sendall( b'00' * 9 + b'\n' )
        b.sendall( b'0' * 100 )                 # never terminated

        assert channel.receive_frame().value == bytes(8)
        assert channel.receive_line().error is ErrorKind.FRAME_TOO_LONG
        assert channel.receive_line().error is ErrorKind.FRAME_TOO_LONG
    finally:
        a.close()
        b.close()


def test_long_line_within_the_default_limit(pair):
    channel, other = pair
    data = bytes( range(256) ) * 4096           # 2 MiB of hex

    sender = FrameSocket( other )
    received = []
    thread = Thread( target=lambda: received.append(channel.receive_frame()) )
    thread.start()
    assert sender.send_frame( data )
    thread.join( 10 )

    assert received[0].value == data
