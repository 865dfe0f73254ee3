import http.server
import socket
import ssl
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def stop_listening(sock: socket.socket) -> None:
    # close alone does not wake a thread blocked in accept
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0)


def make_certificate(
    not_before: datetime,
    not_after: datetime,
    common_name: str | None = "certcheck.test",
    sans: tuple[str, ...] = ("certcheck.test",),
):
    key = ec.generate_private_key(ec.SECP256R1())
    attributes = []
    if common_name:
        attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Certcheck Tests"))
    name = x509.Name(attributes)

    builder = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
    )
    if sans:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(san) for san in sans]),
            critical=False,
        )
    return builder.sign(key, hashes.SHA256()), key


@pytest.fixture
def cert_files(tmp_path):
    """Returns a factory writing a fresh self signed cert and its key to disk."""

    def factory(
        days_valid: int = 30,
        days_old: int = 1,
        name: str = "server",
        **kwargs,
    ):
        now = utcnow()
        cert, key = make_certificate(
            now - timedelta(days=days_old), now + timedelta(days=days_valid), **kwargs
        )
        cert_path = tmp_path / f"{name}.crt"
        key_path = tmp_path / f"{name}.key"
        cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        key_path.write_bytes(
            key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            )
        )
        return cert, cert_path, key_path

    return factory


class TLSServer:
    """Accepts a single connection and completes a TLS handshake on it."""

    def __init__(self, cert_path, key_path, require_client_cert=False):
        self.context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        self.context.load_cert_chain(cert_path, key_path)
        self.context.sni_callback = self._record_server_name
        if require_client_cert:
            # under TLS 1.3 the client is done before the server rejects it
            self.context.maximum_version = ssl.TLSVersion.TLSv1_2
            self.context.verify_mode = ssl.CERT_REQUIRED
            self.context.load_verify_locations(cert_path)
        self.server_names = []
        self.sock = socket.create_server(("127.0.0.1", 0))
        self.port = self.sock.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)

    def _record_server_name(self, ssl_object, server_name, context):
        self.server_names.append(server_name)

    def _serve(self):
        try:
            conn, _ = self.sock.accept()
        except OSError:
            return
        conn.settimeout(5)
        with conn:
            try:
                with self.context.wrap_socket(conn, server_side=True) as tls:
                    self.respond(tls)
            except OSError:
                # the client hangs up as soon as it has the certificate
                pass

    def respond(self, tls):
        tls.recv(1)

    def __enter__(self):
        self.thread.start()
        return self

    def __exit__(self, *exc_info):
        stop_listening(self.sock)
        self.thread.join(timeout=5)


class TricklingServer(TLSServer):
    """Sends an HTTP response one header line at a time."""

    def respond(self, tls):
        tls.sendall(b"HTTP/1.1 200 OK\r\n")
        for index in range(8):
            time.sleep(0.4)
            tls.sendall(f"X-Trickle-{index}: yes\r\n".encode())
        tls.sendall(b"Content-Length: 0\r\n\r\n")


class QuietHandler(http.server.BaseHTTPRequestHandler):
    def do_GET(self):
        body = b"ok"
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


class HTTPSServer:
    def __init__(self, cert_path, key_path):
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(cert_path, key_path)
        context.sni_callback = self._record_server_name
        self.server_names = []
        self.httpd = http.server.HTTPServer(("127.0.0.1", 0), QuietHandler)
        self.httpd.socket = context.wrap_socket(self.httpd.socket, server_side=True)
        self.port = self.httpd.server_address[1]
        self.thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    def _record_server_name(self, ssl_object, server_name, context):
        self.server_names.append(server_name)

    def __enter__(self):
        self.thread.start()
        return self

    def __exit__(self, *exc_info):
        self.httpd.shutdown()
        self.httpd.server_close()
        self.thread.join(timeout=5)


@pytest.fixture
def tls_server(cert_files):
    _, cert_path, key_path = cert_files(name="tls")
    with TLSServer(cert_path, key_path) as server:
        yield server


@pytest.fixture
def https_server(cert_files):
    _, cert_path, key_path = cert_files(name="https")
    with HTTPSServer(cert_path, key_path) as server:
        yield server


@pytest.fixture
def silent_server():
    """Listens but never answers, so a TLS handshake against it stalls."""
    sock = socket.create_server(("127.0.0.1", 0))
    try:
        yield sock.getsockname()[1]
    finally:
        sock.close()


@pytest.fixture
def plaintext_server():
    """Answers the client hello with a plain HTTP error and hangs up."""
    sock = socket.create_server(("127.0.0.1", 0))

    def serve():
        try:
            conn, _ = sock.accept()
        except OSError:
            return
        with conn:
            conn.recv(1024)
            conn.sendall(b"HTTP/1.1 400 Bad Request\r\nContent-Length: 0\r\n\r\n")

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        yield sock.getsockname()[1]
    finally:
        stop_listening(sock)
        thread.join(timeout=5)


@pytest.fixture
def closed_port():
    sock = socket.create_server(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def no_network(monkeypatch):
    """Fails the test if anything tries to open a connection."""
    attempts = []

    def refuse(*args, **kwargs):
        attempts.append(args)
        raise AssertionError(f"unexpected connection attempt: {args}")

    monkeypatch.setattr(socket, "create_connection", refuse)
    return attempts


@pytest.fixture
def client_cert_server(cert_files):
    _, cert_path, key_path = cert_files(name="mtls")
    with TLSServer(cert_path, key_path, require_client_cert=True) as server:
        yield server


@pytest.fixture
def trickling_server(cert_files):
    _, cert_path, key_path = cert_files(name="trickle")
    with TricklingServer(cert_path, key_path) as server:
        yield server
