# reactorkit

A compact reactor-style networking toolkit for POSIX systems, using only the
standard library. It gives you:

- `reactorkit.event_loop.EventLoop`, which polls sockets (epoll, or `poll`
  where epoll is missing), runs timers and accepts work from other threads
  through `execute`;
- `reactorkit.event_loop_group.EventLoopGroup`, a set of loops each running on
  its own thread;
- `reactorkit.connection.Connection`, a TCP connection with buffered,
  non-blocking sends, plus `reactorkit.acceptor.Acceptor` and
  `reactorkit.connector.Connector` for the server and client side;
- `reactorkit.datagram.DatagramSocket` for UDP servers and clients;
- `reactorkit.application.Application`, a process-wide object that ties the
  loops together and stops on SIGINT;
- generator-style coroutines in `reactorkit.coroutine` (`create_coroutine`,
  `send`, `resume`, `yield_value`);
- small Redis pieces: a request parser, an in-memory server and two clients.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## A TCP echo server

A connection without an `on_message` handler echoes what it receives, so an
echo server only needs to listen:

```python
from reactorkit.application import Application
from reactorkit.sockets import SocketAddr


def on_new_connection(conn):
    print("new connection on fd", conn.fileno())


app = Application.instance()
app.set_num_workers(2)
app.listen(SocketAddr("loopback", 9000), on_new_connection)
app.run()
```

`run` blocks until `exit` is called or SIGINT arrives. With no workers the
base loop does both the accepting and the I/O; with workers, new connections
are handed to them in turn. `app.on_init(argv) -> bool` runs before the workers
start (returning False stops `run`), and `app.on_exit()` runs when `run`
finishes.

A connection's behaviour is set through plain attributes:

- `on_connect(conn)` and `on_disconnect(conn)`;
- `on_message(conn, data) -> int`, called with all buffered bytes; return how
  many were consumed, or 0 to wait for more;
- `on_write_complete(conn)`;
- `min_packet_size`, `batch_send` and `user_data`.

`send_packet` and `send_packets` must be called on the connection's own loop
thread; `safe_send` may be called from any thread.

## Addresses

`SocketAddr` holds an IPv4 address and a port. `"loopback"` maps to
`127.0.0.1`. On Linux `"localhost"` maps to the address of the first interface
that is up and not a loopback (or `0.0.0.0` if there is none); elsewhere it maps
to `127.0.0.1`. `SocketAddr()` is the empty, invalid address.

```python
from reactorkit.sockets import SocketAddr

addr = SocketAddr.parse("127.0.0.1:6379")
print(str(addr))          # 127.0.0.1:6379
print(addr.as_tuple())    # ('127.0.0.1', 6379)
```

## Working with loops

```python
from reactorkit.application import Application

loop = Application.instance().base_loop()

loop.schedule_after(2.0, print, "two seconds later")
loop.execute(print, "runs inside the loop thread")
```

Delays and periods are in seconds. Timer methods (`schedule_after`,
`schedule_at`, `schedule_after_with_repeat`, `schedule_at_with_repeat`) must
be called on the loop's own thread and return an id for `cancel`.
`execute`, `schedule` and `schedule_later` may be called from any thread;
`execute` returns a `concurrent.futures.Future` holding the result or the
exception raised. `EventLoop.current()` returns the calling thread's loop.

## Coroutines

Coroutines behave like Python generators that are driven from outside, but
`yield_value` may be called anywhere in the body, even in nested calls:

```python
from reactorkit.coroutine import create_coroutine, resume, send, yield_value


def worker(name):
    reply = yield_value(f"hello from {name}")
    return f"{name} got {reply}"


crt = create_coroutine(worker, "w1")
print(resume(crt))          # hello from w1
print(send(crt, "data"))    # w1 got data
```

Sending a value other than `None` to a coroutine that has not started yet, or
sending to one that has finished, raises `CoroutineError`. An exception raised
in the body is raised again in the caller of `send`.

## Redis pieces

`reactorkit.redis_protocol.Protocol` parses multi-bulk requests
incrementally; `parse_request(data, pos)` returns a `ParseResult` (`OK`,
`WAIT` or `ERROR`) and the position reached, and the words end up in
`params`.

Start the in-memory server, which understands `PING`, `GET` and `SET` in both
the multi-bulk and the inline form (it listens on loopback port 6379 unless
`-p` is given):

```
reactorkit-redis-server -p 6379
```

Run the future-based client against it. It sets and gets a few keys and
prints the replies; `-p` sets the port and `-t` the number of connection
attempts:

```
reactorkit-redis-client -p 6379 -t 5
```

Run the coroutine-based client, which fetches the key `name` from loopback
port 6379:

```
reactorkit-redis-coroutine-client
```

The clients send requests in the inline form built by `build_redis_request`:

```python
from reactorkit.redis_client import build_redis_request

build_redis_request("set", "city", "shenzhen")   # b'set city shenzhen\r\n'
```

## What it does not do

- Addresses are IPv4 only, and host names other than `loopback` and
  `localhost` are not resolved.
- There is no TLS support.
- The Redis server keeps its data in memory only, with nothing written to
  disk, and knows no commands besides `PING`, `GET` and `SET`.
- The Redis clients understand only `+` status replies, `-` error replies and
  `$` bulk strings; arrays and integers are not parsed.