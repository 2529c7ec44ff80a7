#!/usr/bin/env python3
"""
Net_Perf.py — parallel-stream TCP bandwidth probe between hosts
"""
# Every instance plays both roles at once:
#   - RECEIVE: accept inbound TCP on the data port and drain it,
#   - TRANSMIT: open a pool of connections to EVERY listed host and write flat out,
#   - REPORT: print RX/TX bandwidth once per second until the run time is up.
#
# Features:
# - Self-detection through a one-route HTTP beacon keyed by a random per-run token,
#   so the same host list can be handed to every node (a node skips itself)
# - Dial retry every second until the peer's receiver is listening
# - Pool size per target = CPU count, never fewer than 16 connections
# - Ports from NPERF_PORT / HPERF_PORT and HPERF_SELF_PORT, bind address from NPERF_BIND
# - Colorized console (colorama), optional log-style timestamps
#
# Short flags:
#   -t, -T, -c, -w, -F

import argparse
import os
import socket
import socketserver
import sys
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Dict, List, Mapping, Optional, Sequence, TextIO, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# Colorized output
from colorama import init as colorama_init, Fore, Style
colorama_init(autoreset=True)


ONE_MB = 1024 * 1024
DEFAULT_PORT = 9999
DEFAULT_DURATION = 60.0
MIN_CONNECTIONS = 16    # 16 TCP streams are enough to saturate a 100G link
DIAL_BACKOFF = 1.0
DIAL_TIMEOUT = 5.0
PROBE_TIMEOUT = 2.0
IO_TIMEOUT = 0.5        # how often blocked workers look at the stop signal
BACKLOG = 512


# ==================
# Errors
# ==================

class NetPerfError(Exception):
    """Fatal error: reported once, then the process exits non-zero."""


class ConfigError(NetPerfError, ValueError):
    pass


class ListenerError(NetPerfError, OSError):
    pass


# ==================
# Console
# ==================

class Console:
    """
    Console shared by every worker thread.
    - Lines are written whole under a lock (no interleaving between threads)
    - With timestamps on, every line gets a 'YYYY/MM/DD HH:MM:SS ' prefix and
      bandwidth lines move from stdout to the log stream (stderr)
    """

    def __init__(self, timestamps: bool = False, out: Optional[TextIO] = None, err: Optional[TextIO] = None):
        self.timestamps = timestamps
        self._out = out
        self._err = err
        self._lock = threading.Lock()

    @property
    def out(self) -> TextIO:
        return self._out or sys.stdout

    @property
    def err(self) -> TextIO:
        return self._err or sys.stderr

    def _write(self, stream: TextIO, text: str):
        if self.timestamps:
            text = time.strftime("%Y/%m/%d %H:%M:%S ") + text
        with self._lock:
            print(text, file=stream, flush=True)

    def info(self, msg: str):
        self._write(self.err, Fore.CYAN + f"[i] {msg}" + Style.RESET_ALL)

    def step(self, msg: str):
        self._write(self.err, Fore.MAGENTA + f"[*] {msg}" + Style.RESET_ALL)

    def warn(self, msg: str):
        self._write(self.err, Fore.YELLOW + f"[!] {msg}" + Style.RESET_ALL)

    def error(self, msg: str):
        self._write(self.err, Fore.RED + f"Error: {msg}" + Style.RESET_ALL)

    def bandwidth(self, line: str):
        self._write(self.err if self.timestamps else self.out, line)


def human_bytes(n: int) -> str:
    """SI byte count: 0 B, 999 B, 1.0 kB, 12 MB, 1.5 GB."""
    if n < 10:
        return f"{n} B"
    units = ["B", "kB", "MB", "GB", "TB", "PB", "EB"]
    i = 0
    val = float(n)
    while val >= 1000 and i < len(units) - 1:
        val /= 1000
        i += 1
    val = int(val * 10 + 0.5) / 10
    if val < 10:
        return f"{val:.1f} {units[i]}"
    return f"{val:.0f} {units[i]}"


# =========================
# Bandwidth counters & reporter
# =========================

class BandwidthCounters:
    """Bytes received / sent since the last drain, shared by every connection worker."""

    def __init__(self):
        self._lock = threading.Lock()
        self._in = 0
        self._out = 0
        self.total_in = 0
        self.total_out = 0

    def add_in(self, n: int) -> None:
        with self._lock:
            self._in += n
            self.total_in += n

    def add_out(self, n: int) -> None:
        with self._lock:
            self._out += n
            self.total_out += n

    def drain(self) -> Tuple[int, int]:
        """Return (bytes_in, bytes_out) since the previous drain and zero both in one step."""
        with self._lock:
            snapshot = (self._in, self._out)
            self._in = 0
            self._out = 0
        return snapshot


def format_bandwidth(rx: int, tx: int, interval: float = 1.0) -> str:
    return f"Bandwidth:  {human_bytes(int(rx / interval))}/s RX  |  {human_bytes(int(tx / interval))}/s TX"


class Reporter(threading.Thread):
    """Drains the counters every interval and prints one bandwidth line."""

    def __init__(self, counters: BandwidthCounters, console: Console, stop: threading.Event, interval: float = 1.0):
        super().__init__(name="reporter", daemon=True)
        self.counters = counters
        self.console = console
        self.stop = stop
        self.interval = interval

    def run(self):
        while not self.stop.wait(self.interval):
            self.emit()

    def emit(self) -> Tuple[int, int]:
        rx, tx = self.counters.drain()
        self.console.bandwidth(format_bandwidth(rx, tx, self.interval))
        return rx, tx


# =========================
# Self-identity beacon
# =========================

def new_run_token() -> str:
    return str(uuid.uuid4())


def url_host(host: str) -> str:
    """Bracket bare IPv6 literals for use in a URL authority."""
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


def socket_family(bind: str) -> int:
    return socket.AF_INET6 if ":" in bind else socket.AF_INET


class _BeaconHandler(BaseHTTPRequestHandler):
    server_version = "net-perf"

    def _answer(self):
        length = int(self.headers.get("Content-Length") or 0)
        if length:
            self.rfile.read(length)
        path = self.path.split("?", 1)[0]
        self.send_response(200 if path == "/" + self.server.token else 404)
        self.send_header("Content-Length", "0")
        self.end_headers()

    do_GET = do_HEAD = do_POST = do_PUT = do_DELETE = do_PATCH = do_OPTIONS = _answer

    def log_message(self, format, *args):
        pass


class _BeaconServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_port = False    # a second instance on the same port must fail to bind

    def __init__(self, address: Tuple[str, int], token: str):
        self.token = token
        self.address_family = socket_family(address[0])
        super().__init__(address, _BeaconHandler)

    def server_bind(self):
        # HTTPServer.server_bind would resolve our FQDN; nothing here needs it
        socketserver.TCPServer.server_bind(self)
        self.server_name, self.server_port = self.server_address[:2]


class Beacon:
    """
    HTTP listener answering 200 on exactly one path: '/<run token>'.
    A peer can only know the token if it IS this process, so a successful
    probe of a listed host means that host is us.
    Access control is the token alone: trusted networks only.
    """

    def __init__(self, token: str, port: int, bind: str = ""):
        self.token = token
        self.port = port
        self.bind = bind
        self._server: Optional[_BeaconServer] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._lock = threading.Lock()

    @property
    def armed(self) -> bool:
        return self._server is not None

    def start(self, timeout: float = 5.0):
        try:
            server = _BeaconServer((self.bind, self.port), self.token)
        except OSError as ex:
            raise ListenerError(f"cannot bind self-detect port {self.port}: {ex}") from ex
        self.port = server.server_address[1]
        self._server = server
        self._thread = threading.Thread(target=self._serve, args=(server,), name="beacon", daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout):
            self.close()
            raise ListenerError(f"self-detect service on port {self.port} did not come up")

    def _serve(self, server: _BeaconServer):
        self._ready.set()
        server.serve_forever(poll_interval=0.2)

    def close(self):
        with self._lock:
            server, self._server = self._server, None
        if server is None:
            return
        server.shutdown()
        server.server_close()


def probe_session() -> requests.Session:
    """Session for self-probes: no retries, no redirects, no proxy from the environment."""
    s = requests.Session()
    adapter = HTTPAdapter(max_retries=Retry(total=0, redirect=0))
    s.mount("http://", adapter)
    s.trust_env = False
    return s


def probe(host: str, port: int, token: str, timeout: float = PROBE_TIMEOUT,
          session: Optional[requests.Session] = None) -> bool:
    """True only if host:port answers 200 for our token, i.e. host is this process."""
    sess = session or probe_session()
    try:
        r = sess.get(f"http://{url_host(host)}:{port}/{token}", timeout=timeout, allow_redirects=False)
    except Exception:
        # Refused / timed out / unresolvable: the normal answer from a remote host.
        return False
    finally:
        if session is None:
            sess.close()
    r.close()
    return r.status_code == 200


def find_self_aliases(targets: Sequence[str], port: int, token: str, timeout: float = PROBE_TIMEOUT) -> List[str]:
    """Probe every target at once while the beacon is armed; return those that are us."""
    if not targets:
        return []
    with ThreadPoolExecutor(max_workers=len(targets), thread_name_prefix="probe") as ex:
        hits = list(ex.map(lambda h: probe(h, port, token, timeout), targets))
    return [host for host, hit in zip(targets, hits) if hit]


# =========================
# Receive engine (server role)
# =========================

class ReceiveEngine:
    """Accepts any number of inbound connections and drains each into the RX counter."""

    def __init__(self, counters: BandwidthCounters, console: Console, stop: threading.Event,
                 port: int, bind: str = "", on_fatal: Optional[Callable[[NetPerfError], None]] = None):
        self.counters = counters
        self.console = console
        self.stop = stop
        self.port = port
        self.bind = bind
        self.on_fatal = on_fatal
        self.sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._closed = threading.Event()

    def start(self):
        sock = socket.socket(socket_family(self.bind), socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.bind, self.port))
            sock.listen(BACKLOG)
        except OSError as ex:
            sock.close()
            raise ListenerError(f"cannot listen on data port {self.port}: {ex}") from ex
        sock.settimeout(IO_TIMEOUT)
        self.port = sock.getsockname()[1]
        self.sock = sock
        self._thread = threading.Thread(target=self._accept_loop, name="rx-accept", daemon=True)
        self._thread.start()

    def _running(self) -> bool:
        return not (self.stop.is_set() or self._closed.is_set())

    def _accept_loop(self):
        while self._running():
            try:
                conn, addr = self.sock.accept()
            except socket.timeout:
                continue
            except OSError as ex:
                if self._running():
                    self._fatal(ListenerError(f"accept failed on data port {self.port}: {ex}"))
                return
            threading.Thread(target=self.handle_rx, args=(conn, addr), name=f"rx-{addr[0]}", daemon=True).start()

    def _fatal(self, err: NetPerfError):
        if self.on_fatal:
            self.on_fatal(err)
        else:
            self.console.error(str(err))
            self.stop.set()

    def handle_rx(self, conn: socket.socket, addr):
        peer = f"{addr[0]}:{addr[1]}"
        buf = bytearray(ONE_MB)
        conn.settimeout(IO_TIMEOUT)
        with conn:
            while self._running():
                try:
                    n = conn.recv_into(buf)
                except socket.timeout:
                    continue
                except OSError as ex:
                    self.console.warn(f"RX-Error {peer} {ex}")
                    return
                if n == 0:
                    self.console.warn(f"RX-Error {peer} EOF")
                    return
                self.counters.add_in(n)

    def close(self):
        self._closed.set()
        if self._thread is not None:
            self._thread.join(timeout=IO_TIMEOUT * 4)
        if self.sock is not None:
            self.sock.close()


# =========================
# Transmit engine (client role)
# =========================

def pool_size(override: Optional[int] = None) -> int:
    if override:
        return override
    return max(os.cpu_count() or 1, MIN_CONNECTIONS)


class TransmitEngine:
    """
    Drives one target host with a pool of independent writers.
    - Each slot dials host:port, retrying every `backoff` seconds until it connects
    - Then writes a fixed 1 MiB buffer until the run stops or the write fails
    - A failed write ends only that slot, unless fail_fast is set
    """

    def __init__(self, host: str, port: int, counters: BandwidthCounters, console: Console,
                 stop: threading.Event, connections: Optional[int] = None, fail_fast: bool = False,
                 on_fatal: Optional[Callable[[NetPerfError], None]] = None, backoff: float = DIAL_BACKOFF):
        self.host = host
        self.port = port
        self.counters = counters
        self.console = console
        self.stop = stop
        self.connections = pool_size(connections)
        self.fail_fast = fail_fast
        self.on_fatal = on_fatal
        self.backoff = backoff
        self.buf = bytes(ONE_MB)

    def run(self):
        """Block until every slot has exited."""
        self.console.info(f"Number of client connections to {self.host}: {self.connections}")
        with ThreadPoolExecutor(max_workers=self.connections, thread_name_prefix=f"tx-{self.host}") as ex:
            futures = [ex.submit(self.worker, slot) for slot in range(self.connections)]
        for fut in futures:
            fut.result()

    def dial(self) -> Optional[socket.socket]:
        while not self.stop.is_set():
            try:
                return socket.create_connection((self.host, self.port), timeout=DIAL_TIMEOUT)
            except OSError as ex:
                self.console.warn(f"Dial-Error {self.host}:{self.port} {ex}")
                self.stop.wait(self.backoff)
        return None

    def worker(self, slot: int):
        conn = self.dial()
        if conn is None:
            return
        conn.settimeout(IO_TIMEOUT)
        with conn:
            while not self.stop.is_set():
                try:
                    n = conn.send(self.buf)
                except socket.timeout:
                    continue
                except OSError as ex:
                    self.console.warn(f"TX-Error {self.host}:{self.port} (slot {slot}) {ex}")
                    if self.fail_fast:
                        self._fatal(NetPerfError(f"write to {self.host}:{self.port} failed: {ex}"))
                    return
                self.counters.add_out(n)

    def _fatal(self, err: NetPerfError):
        if self.on_fatal:
            self.on_fatal(err)
        else:
            self.stop.set()


# ==================
# Configuration
# ==================

def parse_port(value: str, name: str) -> int:
    try:
        port = int(value)
    except ValueError:
        raise ConfigError(f"{name}: invalid port {value!r}") from None
    if not 1 <= port <= 65535:
        raise ConfigError(f"{name}: port {port} out of range")
    return port


def load_ports(environ: Mapping[str, str]) -> Tuple[int, int, str]:
    """Return (data_port, beacon_port, bind_address) from the environment."""
    if environ.get("NPERF_PORT"):
        port = parse_port(environ["NPERF_PORT"], "NPERF_PORT")
    elif environ.get("HPERF_PORT"):
        port = parse_port(environ["HPERF_PORT"], "HPERF_PORT")
    else:
        port = DEFAULT_PORT

    for name in ("HPERF_SELF_PORT", "NPERF_SELF_PORT"):
        if environ.get(name):
            beacon_port = parse_port(environ[name], name)
            break
    else:
        beacon_port = parse_port(str(port + 1), "self-detect port")

    return port, beacon_port, environ.get("NPERF_BIND", "")


def unique_targets(hosts: Sequence[str]) -> Tuple[str, ...]:
    if not hosts:
        raise ConfigError("provide a list of hostnames or IP addresses")
    seen: Dict[str, None] = {}
    for host in hosts:
        if host in seen:
            raise ConfigError(f"duplicate argument {host!r} found, please make sure all arguments are unique")
        seen[host] = None
    return tuple(seen)


@dataclass(frozen=True)
class Config:
    targets: Tuple[str, ...]
    duration: float = DEFAULT_DURATION
    timestamps: bool = False
    port: int = DEFAULT_PORT
    beacon_port: int = DEFAULT_PORT + 1
    bind: str = ""
    connections: Optional[int] = None
    settle: float = 0.0
    fail_fast: bool = False
    report_interval: float = 1.0

    def __post_init__(self):
        object.__setattr__(self, "targets", unique_targets(self.targets))
        if self.duration < 0:
            raise ConfigError(f"run time must not be negative (got {self.duration})")
        if self.connections is not None and self.connections < 1:
            raise ConfigError(f"connection count must be at least 1 (got {self.connections})")
        for name, port in (("data", self.port), ("self-detect", self.beacon_port)):
            if not 1 <= port <= 65535:
                raise ConfigError(f"{name} port {port} out of range")
        if self.port == self.beacon_port:
            raise ConfigError(f"data port and self-detect port are both {self.port}")

    @classmethod
    def from_args(cls, args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> "Config":
        port, beacon_port, bind = load_ports(os.environ if environ is None else environ)
        return cls(
            targets=tuple(args.hosts),
            duration=args.time,
            timestamps=args.timestamps,
            port=port,
            beacon_port=beacon_port,
            bind=bind,
            connections=args.connections,
            settle=args.wait,
            fail_fast=args.fail_fast,
        )


# ==================
# Orchestrator
# ==================

class NetPerf:
    """One benchmark run: beacon, receiver, reporter, and a transmit engine per remote target."""

    def __init__(self, config: Config, console: Optional[Console] = None, token: Optional[str] = None):
        self.config = config
        self.console = console or Console(timestamps=config.timestamps)
        self.token = token or new_run_token()
        self.counters = BandwidthCounters()
        self.stop = threading.Event()
        self.fatal: Optional[NetPerfError] = None
        self._fatal_lock = threading.Lock()

        self.beacon = Beacon(self.token, config.beacon_port, config.bind)
        self.receiver = ReceiveEngine(self.counters, self.console, self.stop, config.port,
                                      bind=config.bind, on_fatal=self.on_fatal)
        self.reporter = Reporter(self.counters, self.console, self.stop, config.report_interval)
        self.self_aliases: List[str] = []
        self.transmitters: Dict[str, TransmitEngine] = {}
        self._tx_threads: List[threading.Thread] = []
        self._started_at = 0.0

    def on_fatal(self, err: NetPerfError):
        with self._fatal_lock:
            if self.fatal is None:
                self.fatal = err
        self.stop.set()

    def start(self):
        cfg = self.config
        self._started_at = time.monotonic()
        for host in cfg.targets:
            self.console.info(f"Host {host}")

        try:
            self.beacon.start()
            self.console.step(f"Self-detect service ready on port {self.beacon.port}")
            if cfg.settle > 0:
                self.console.step(f"Waiting {cfg.settle:g}s for services to be ready ...")
                self.stop.wait(cfg.settle)

            self.receiver.start()
            self.console.step(f"Receiving on data port {self.receiver.port}")
        except NetPerfError:
            self.stop.set()
            self.beacon.close()
            self.receiver.close()
            raise

        self.reporter.start()

        self.self_aliases = find_self_aliases(cfg.targets, self.beacon.port, self.token)
        if self.self_aliases:
            self.beacon.close()
            self.console.step("Self-detect service closed after successful skip")
            for host in self.self_aliases:
                self.console.info(f"Skipping {host}: it resolves to this host")

        for host in cfg.targets:
            if host in self.self_aliases:
                continue
            engine = TransmitEngine(host, cfg.port, self.counters, self.console, self.stop,
                                    connections=cfg.connections, fail_fast=cfg.fail_fast,
                                    on_fatal=self.on_fatal)
            t = threading.Thread(target=engine.run, name=f"tx-{host}", daemon=True)
            self.transmitters[host] = engine
            self._tx_threads.append(t)
            t.start()

    def wait(self) -> int:
        """Sleep out the run time (or until a fatal error), then shut down."""
        self.stop.wait(self.config.duration)
        return self.shutdown()

    def shutdown(self) -> int:
        self.stop.set()
        self.beacon.close()
        self.receiver.close()
        if self.reporter.is_alive():
            self.reporter.join(timeout=self.config.report_interval + IO_TIMEOUT)
        for t in self._tx_threads:
            t.join(timeout=IO_TIMEOUT * 4)
        self.print_summary()
        if self.fatal is not None:
            self.console.error(str(self.fatal))
            return 1
        return 0

    def print_summary(self):
        elapsed = max(0.001, time.monotonic() - self._started_at)
        c = self.counters
        self.console.step(
            f"Done after {elapsed:.1f}s: RX {human_bytes(c.total_in)} "
            f"(avg {human_bytes(int(c.total_in / elapsed))}/s) | TX {human_bytes(c.total_out)} "
            f"(avg {human_bytes(int(c.total_out / elapsed))}/s)"
        )

    def run(self) -> int:
        self.start()
        return self.wait()


# ==========
# CLI
# ==========

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Measure TCP throughput between hosts: every host sends to and receives from every other.",
        epilog="Environment: NPERF_PORT (or HPERF_PORT) data port, default 9999;\n"
               "HPERF_SELF_PORT self-detect port, default data port + 1;\n"
               "NPERF_BIND listen address, default all interfaces.",
        formatter_class=argparse.RawTextHelpFormatter
    )
    p.add_argument("hosts", nargs="*", help="Hostnames or IP addresses to benchmark against (may include this host).")
    p.add_argument("-t", "--time", type=float, default=DEFAULT_DURATION, help="Max time in seconds (default: 60).")
    p.add_argument("-T", "--timestamps", action="store_true", default=False, help="Report timestamps (log-style output).")
    p.add_argument("-c", "--connections", type=int, help="TCP connections per target (default: CPU count, at least 16).")
    p.add_argument("-w", "--wait", type=float, default=0.0, help="Extra seconds to wait after the self-detect service is up (default: 0).")
    p.add_argument("-F", "--fail-fast", action="store_true", help="Abort the whole run when any established connection fails to write.")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    console = Console(timestamps=args.timestamps)
    try:
        config = Config.from_args(args)
        return NetPerf(config, console).run()
    except NetPerfError as ex:
        console.error(str(ex))
        return 1


if __name__ == "__main__":
    sys.exit(main())
