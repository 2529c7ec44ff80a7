import socket
import struct
import threading
import time


def get_free_port(host='127.0.0.1'):
    """
    Get a free TCP port on host.
    Note: There's an inherent race condition between this function returning
    and the caller binding to the port. We use SO_REUSEADDR to mitigate this.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind((host, 0))
        return s.getsockname()[1]


def wait_for_port(port, host='127.0.0.1', timeout=5.0):
    """Wait for a port to be open."""
    start_time = time.time()
    while time.time() - start_time < timeout:
        try:
            with socket.create_connection((host, port), timeout=0.1):
                return True
        except (socket.timeout, ConnectionRefusedError, OSError):
            time.sleep(0.1)
    return False


def wait_until(predicate, timeout=5.0, interval=0.05):
    """Poll predicate until it returns truthy or timeout expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def loopback_alias_available(host='127.0.0.2'):
    """Linux routes all of 127/8 to lo; other systems usually only 127.0.0.1."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((host, 0))
            return True
    except OSError:
        return False


def send_bytes(port, total, host='127.0.0.1', chunk_size=65536):
    """Connect, write total bytes, close."""
    chunk = b"x" * chunk_size
    sent = 0
    with socket.create_connection((host, port), timeout=5) as s:
        while sent < total:
            n = min(chunk_size, total - sent)
            s.sendall(chunk[:n])
            sent += n
    return sent


class ClosingServer(threading.Thread):
    """TCP server that accepts every connection and immediately resets it."""

    def __init__(self, host='127.0.0.1', port=0):
        super().__init__(daemon=True)
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind((host, port))
        self.sock.listen(64)
        self.sock.settimeout(0.2)
        self.port = self.sock.getsockname()[1]
        self.running = True
        self.accepted = 0

    def run(self):
        while self.running:
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            self.accepted += 1
            # SO_LINGER 0: close sends RST so the writer fails fast
            conn.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
            conn.close()

    def stop(self):
        self.running = False
        self.join(timeout=2)
        self.sock.close()
