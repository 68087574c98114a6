"""Shared helpers: a fake tigerbeetle executable and a tiny client."""
from __future__ import annotations

import asyncio
import stat
import sys
import textwrap
from pathlib import Path

# A stand-in for the tigerbeetle binary implementing the ``format``/``start``
# command line contract. ``start`` serves a line protocol on the requested
# address: ``create <id>`` appends a record, ``lookup <id>`` answers
# ``found`` or ``empty``. Records live in the storage file, so two servers
# only share data if they share a file.
FAKE_SERVER_SOURCE = textwrap.dedent(
    r'''
    import os
    import signal
    import socket
    import sys

    MAGIC = "fake-tigerbeetle"


    def option(args, name):
        prefix = "--" + name + "="
        for arg in args:
            if arg.startswith(prefix):
                return arg[len(prefix):]
        return None


    def format_file(args):
        path = args[-1]
        if option(args, "replica") != "0":
            print("error: unexpected replica", flush=True)
            return 2
        if os.path.exists(path):
            print("error: data file already exists: " + path, flush=True)
            return 1
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(MAGIC + " cluster=" + option(args, "cluster") + "\n")
        print("formatted " + path, flush=True)
        return 0


    def read_keys(path):
        with open(path, encoding="utf-8") as handle:
            return {line.strip() for line in handle.readlines()[1:]}


    def start(args):
        path = args[-1]
        if os.environ.get("FAKE_TB_FAIL_START"):
            print("error: refusing to start", file=sys.stderr, flush=True)
            return 3
        with open(path, encoding="utf-8") as handle:
            if not handle.readline().startswith(MAGIC):
                print("error: invalid data file", file=sys.stderr, flush=True)
                return 1
        if os.environ.get("FAKE_TB_IGNORE_TERM"):
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
        else:
            signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))
        if os.environ.get("FAKE_TB_NO_LISTEN"):
            while True:
                signal.pause()
        host, _, port = option(args, "addresses").rpartition(":")
        server = socket.create_server((host, int(port)))
        print("listening on " + host + ":" + port, flush=True)
        while True:
            conn, _ = server.accept()
            with conn, conn.makefile("rw", encoding="utf-8") as stream:
                for line in stream:
                    command, _, key = line.strip().partition(" ")
                    if command == "create":
                        with open(path, "a", encoding="utf-8") as handle:
                            handle.write(key + "\n")
                        stream.write("ok\n")
                    elif command == "lookup":
                        stream.write(("found" if key in read_keys(path) else "empty") + "\n")
                    else:
                        stream.write("error\n")
                    stream.flush()


    def main(argv):
        command, args = argv[1], argv[2:]
        if command == "format":
            return format_file(args)
        if command == "start":
            return start(args)
        print("unknown command " + command, file=sys.stderr, flush=True)
        return 2


    if __name__ == "__main__":
        sys.exit(main(sys.argv))
    '''
)


def write_fake_binary(directory: Path, name: str = "tigerbeetle") -> Path:
    """Write the fake server into *directory* and make it executable."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(f"#!{sys.executable}\n{FAKE_SERVER_SOURCE}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


async def send_line(port: int, line: str, *, host: str = "127.0.0.1") -> str:
    """Send one request line to a fake server and return its reply."""
    reader, writer = await asyncio.open_connection(host, port)
    try:
        writer.write(f"{line}\n".encode())
        await writer.drain()
        reply = await asyncio.wait_for(reader.readline(), timeout=5)
    finally:
        writer.close()
        await writer.wait_closed()
    return reply.decode().strip()
