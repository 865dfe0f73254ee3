import math
import select
import socket
import ssl
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from ipaddress import IPv4Address, IPv6Address, ip_address
from pathlib import Path
from typing import Callable
from urllib.parse import unquote, urlsplit

import click
import httpx
import idna
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID
from OpenSSL import SSL

__version__ = "2026.10.19"

DEFAULT_PORT = 443

STATE_OK = 0
STATE_CRITICAL = 2
STATE_UNKNOWN = 3

VALID = "valid"
NOT_YET_VALID = "not-yet-valid"
EXPIRED = "expired"

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S UTC"

LOCATOR_EXAMPLES = (
    "file:///var/run/app/site.crt, https://dev1.example.com:8443, tcp://127.0.0.1:443"
)


class ConfigurationError(click.ClickException):
    """Invalid invocation, detected before any file or network access."""

    exit_code = STATE_UNKNOWN


class InvariantError(AssertionError):
    pass


class FetchError(Exception):
    """
    Base for everything that can go wrong while retrieving a certificate.

    The scheme and locator are filled in by fetch_certificate, so
    the message always says what we were trying to reach.
    """

    def __init__(
        self, message: str, scheme: str | None = None, locator: str | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.scheme = scheme
        self.locator = locator

    def annotate(self, scheme: str, locator: str) -> None:
        if self.scheme is None:
            self.scheme = scheme
        if self.locator is None:
            self.locator = locator

    def __str__(self) -> str:
        if self.scheme is None and self.locator is None:
            return self.message
        return f"{self.scheme} {self.locator}: {self.message}"


class UnsupportedSchemeError(FetchError):
    pass


class ReadError(FetchError):
    pass


class ParseError(FetchError):
    pass


class ConnectError(FetchError):
    pass


class HandshakeError(FetchError):
    pass


class NoCertificateError(FetchError):
    pass


class RequestError(FetchError):
    pass


class TimeoutExceededError(FetchError, TimeoutError):
    pass


@dataclass(frozen=True)
class Deadline:
    expires_at: float

    @classmethod
    def from_timeout(cls, seconds: float | None) -> "Deadline | None":
        if not seconds or seconds <= 0:
            return None
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        left = self.expires_at - time.monotonic()
        if left <= 0:
            raise TimeoutExceededError("deadline exceeded")
        return left


def remaining(deadline: Deadline | None) -> float | None:
    return None if deadline is None else deadline.remaining()


@dataclass(frozen=True)
class FetchConfig:
    servername: str | None = None
    influx: bool = False
    deadline: Deadline | None = None
    verbose: bool = False


@dataclass(frozen=True)
class Host:
    host: str | IPv4Address | IPv6Address
    port: int

    def __str__(self) -> str:
        if isinstance(self.host, IPv6Address):
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    @property
    def is_ip(self) -> bool:
        return isinstance(self.host, (IPv4Address, IPv6Address))


@dataclass(frozen=True)
class Locator:
    raw: str
    scheme: str
    host: Host | None = None
    path: str | None = None


@dataclass(frozen=True)
class CertificateRecord:
    not_before: datetime
    not_after: datetime
    subject: str
    issuer: str
    serial: int
    sha256: str
    locator: str
    scheme: str


@dataclass(frozen=True)
class Metrics:
    record: CertificateRecord
    now: datetime
    days_until_expiry: int
    seconds_until_expiry: int
    days_until_valid: int
    state: str


@dataclass(frozen=True)
class CheckResult:
    state: int
    output: str


def echo(config: FetchConfig, message: str) -> None:
    if config.verbose:
        click.secho(message, err=True)


def parse_host(netloc: str) -> Host:
    # A bare IPv6 address can be confused
    # with a host:port combo, so let's try
    # to parse it as that first.
    try:
        return Host(ip_address(netloc), DEFAULT_PORT)
    except ValueError:
        pass

    parsed_host = urlsplit(f"//{netloc}")
    if not parsed_host.hostname:
        raise ConfigurationError(f"Invalid host specified: '{netloc}'")

    try:
        port = parsed_host.port
    except ValueError as ve:
        raise ConfigurationError(f"Invalid port specified: '{netloc}'") from ve

    if port is None:
        port = DEFAULT_PORT

    try:
        return Host(ip_address(parsed_host.hostname), port)
    except ValueError:
        pass

    if parsed_host.hostname.isascii():
        return Host(parsed_host.hostname, port)

    try:
        return Host(idna.encode(parsed_host.hostname).decode(), port)
    except idna.IDNAError as error:
        raise ConfigurationError(f"Invalid host specified: {error}") from error


def is_bare_host(locator: str, scheme: str, path: str) -> bool:
    if not scheme:
        return True
    if "://" in locator:
        return False
    # host:port and IPv6 literals also split as scheme:path
    if path.isdigit():
        return True
    try:
        ip_address(locator)
    except ValueError:
        return False
    return True


def parse_locator(locator: str) -> Locator:
    """
    Splits a locator into its scheme and target.

    Anything without a scheme is taken to be a host:port
    to be reached over plain TCP. Never touches the network.
    """
    locator = (locator or "").strip()
    if not locator:
        raise ConfigurationError(
            f"--cert is required. must be URL to certificate. ex: {LOCATOR_EXAMPLES}"
        )

    try:
        parsed = urlsplit(locator)
    except ValueError as error:
        raise ConfigurationError(f"Invalid locator '{locator}': {error}") from error

    if is_bare_host(locator, parsed.scheme, parsed.path):
        return Locator(locator, "tcp", host=parse_host(locator))

    scheme = parsed.scheme.lower()

    if scheme == "file":
        netloc = "" if parsed.netloc in ("", "localhost") else parsed.netloc
        path = unquote(netloc + parsed.path)
        if not path:
            raise ConfigurationError(f"No file path in locator '{locator}'")
        return Locator(locator, scheme, path=path)

    if scheme in ("tcp", "https"):
        return Locator(locator, scheme, host=parse_host(parsed.netloc))

    raise UnsupportedSchemeError(
        f"unsupported scheme '{parsed.scheme}', expected one of: file, tcp, https",
        scheme=scheme,
        locator=locator,
    )


def load_certificate(data: bytes) -> x509.Certificate:
    """Takes the first certificate from PEM data, or a single DER blob."""
    if b"-----BEGIN" in data:
        try:
            certs = x509.load_pem_x509_certificates(data)
        except ValueError as error:
            raise ParseError(f"invalid PEM certificate: {error}") from error
        if not certs:
            raise ParseError("no certificate found in PEM data")
        return certs[0]

    try:
        return x509.load_der_x509_certificate(data)
    except ValueError as error:
        raise ParseError(f"not a PEM or DER certificate: {error}") from error


def get_subject(cert: x509.Certificate) -> str:
    common_names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if common_names:
        return str(common_names[0].value)

    try:
        sans = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        sans = None
    if sans is not None:
        for name in sans.value:
            return str(name.value)

    return cert.subject.rfc4514_string()


def make_record(cert: x509.Certificate, locator: Locator) -> CertificateRecord:
    return CertificateRecord(
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        subject=get_subject(cert),
        issuer=cert.issuer.rfc4514_string(),
        serial=cert.serial_number,
        sha256=cert.fingerprint(hashes.SHA256()).hex(),
        locator=locator.raw,
        scheme=locator.scheme,
    )


def fetch_file(locator: Locator, config: FetchConfig) -> x509.Certificate:
    remaining(config.deadline)
    echo(config, f"Reading certificate file '{locator.path}'")
    try:
        data = Path(locator.path).read_bytes()
    except OSError as error:
        raise ReadError(f"unable to read certificate file: {error}") from error
    remaining(config.deadline)
    return load_certificate(data)


def encode_servername(servername: str) -> str:
    if servername.isascii():
        return servername
    try:
        return idna.encode(servername).decode()
    except idna.IDNAError as error:
        raise ConfigurationError(f"Invalid servername specified: {error}") from error


def get_servername(host: Host, config: FetchConfig) -> str | None:
    if config.servername:
        return encode_servername(config.servername)
    # IP addresses are not permitted in servername
    # so only add if we are connecting to a DNS name.
    if host.is_ip:
        return None
    return str(host.host)


def open_socket(host: Host, config: FetchConfig) -> socket.socket:
    echo(config, f"Connecting directly to host '{host}'")
    try:
        return socket.create_connection(
            (str(host.host), host.port), timeout=remaining(config.deadline)
        )
    except OSError as error:
        # without a deadline a timeout can only come from the OS
        if isinstance(error, socket.timeout) and config.deadline is not None:
            raise TimeoutExceededError(f"timed out connecting to {host}") from error
        raise ConnectError(f"unable to connect to {host}: {error}") from error


def do_handshake(
    conn: SSL.Connection, sock: socket.socket, deadline: Deadline | None
) -> None:
    """
    Drives the handshake to completion, waiting on the socket
    between steps for no longer than the deadline allows.
    """
    while True:
        try:
            conn.do_handshake()
            return
        except SSL.WantReadError:
            readers, writers = [sock], []
        except SSL.WantWriteError:
            readers, writers = [], [sock]

        ready = select.select(readers, writers, [], remaining(deadline))
        if not any(ready):
            raise TimeoutExceededError("timed out during TLS handshake")


def fetch_tcp(locator: Locator, config: FetchConfig) -> x509.Certificate:
    host = locator.host
    # Inspection mode: the peer is never verified, so expired
    # and self signed certs come through as well.
    ctx = SSL.Context(SSL.TLS_CLIENT_METHOD)
    ctx.set_verify(SSL.VERIFY_NONE)

    servername = get_servername(host, config)
    with open_socket(host, config) as sock:
        sock.setblocking(config.deadline is None)
        conn = SSL.Connection(ctx, sock)

        if servername:
            conn.set_tlsext_host_name(servername.encode())

        conn.set_connect_state()
        try:
            do_handshake(conn, sock, config.deadline)
        except SSL.Error as error:
            # If the host requires a client certificate
            # the handshake will fail, but we will still
            # get our certificate.
            cert = conn.get_peer_certificate()
            if cert is None:
                raise HandshakeError(f"TLS handshake failed: {error}") from error
            echo(config, f"Handshake failed after certificate was received: {error}")
        else:
            cert = conn.get_peer_certificate()
            if cert is None:
                raise NoCertificateError("server presented no certificate")

    return cert.to_cryptography()


def inspection_ssl_context() -> ssl.SSLContext:
    """Same as the tcp handshake: accept whatever the peer presents."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def caused_by_ssl_error(error: BaseException) -> bool:
    cause = error.__cause__ or error.__context__
    while cause is not None:
        if isinstance(cause, ssl.SSLError):
            return True
        cause = cause.__cause__ or cause.__context__
    return False


class CertificateCaptured(Exception):
    """Ends an https exchange once the peer certificate is in hand."""


class HandshakeWatcher:
    """
    Trace hook for httpx requests.

    httpx only bounds each connect, read and write on its own, so the
    deadline is checked again on every event. Once the TLS handshake
    completes the peer certificate is kept and the exchange is cut
    short, since nothing the server answers can change it.
    """

    def __init__(self, deadline: Deadline | None) -> None:
        self.deadline = deadline
        self.der: bytes | None = None

    def __call__(self, event_name: str, info: dict) -> None:
        remaining(self.deadline)
        if event_name != "connection.start_tls.complete":
            return
        stream = info["return_value"]
        ssl_object = stream.get_extra_info("ssl_object")
        if ssl_object is not None:
            self.der = ssl_object.getpeercert(True)
        # the connection pool never sees this stream
        stream.close()
        raise CertificateCaptured()


def fetch_https(locator: Locator, config: FetchConfig) -> x509.Certificate:
    host = locator.host
    watcher = HandshakeWatcher(config.deadline)
    extensions = {"trace": watcher}
    if config.servername:
        extensions["sni_hostname"] = encode_servername(config.servername)

    echo(config, f"Requesting '{locator.raw}' from host '{host}'")
    try:
        with httpx.Client(
            verify=inspection_ssl_context(),
            timeout=httpx.Timeout(remaining(config.deadline)),
            trust_env=False,
        ) as client:
            client.get(locator.raw, extensions=extensions)
    except CertificateCaptured:
        echo(config, "Handshake complete, not waiting for a response")
    except httpx.TimeoutException as error:
        # without a deadline a timeout can only come from the OS
        if config.deadline is None:
            raise ConnectError(f"unable to connect to {host}: {error}") from error
        raise TimeoutExceededError(f"timed out requesting {host}: {error}") from error
    except httpx.ConnectError as error:
        if caused_by_ssl_error(error):
            raise HandshakeError(f"TLS handshake failed: {error}") from error
        raise ConnectError(f"unable to connect to {host}: {error}") from error
    except (httpx.HTTPError, httpx.InvalidURL) as error:
        raise RequestError(f"request failed: {error}") from error

    if not watcher.der:
        raise NoCertificateError("server presented no certificate")
    return load_certificate(watcher.der)


FETCHERS: dict[str, Callable[[Locator, FetchConfig], x509.Certificate]] = {
    "file": fetch_file,
    "tcp": fetch_tcp,
    "https": fetch_https,
}


def fetch_certificate(locator: str, config: FetchConfig) -> CertificateRecord:
    """
    Retrieves the leaf certificate a locator points at.

    A single attempt is made; the first failure is raised
    as a FetchError tagged with the scheme and locator.
    """
    if config is None:
        raise InvariantError("fetch_certificate needs a FetchConfig")

    parsed = parse_locator(locator)
    try:
        cert = FETCHERS[parsed.scheme](parsed, config)
    except FetchError as error:
        error.annotate(parsed.scheme, parsed.raw)
        raise
    return make_record(cert, parsed)


def build_metrics(record: CertificateRecord, now: datetime | None = None) -> Metrics:
    """
    Days are floored, so 9 days and 23 hours left is 9,
    and one second past expiry is already -1.
    """
    if not isinstance(record, CertificateRecord):
        raise InvariantError(f"expected a CertificateRecord, got {record!r}")
    if now is None:
        now = datetime.now(tz=timezone.utc)
    elif now.tzinfo is None:
        raise InvariantError("now must be timezone aware")

    until_expiry = record.not_after - now
    if now > record.not_after:
        state = EXPIRED
    elif now < record.not_before:
        state = NOT_YET_VALID
    else:
        state = VALID

    return Metrics(
        record=record,
        now=now,
        days_until_expiry=until_expiry.days,
        seconds_until_expiry=math.floor(until_expiry.total_seconds()),
        days_until_valid=(record.not_before - now).days,
        state=state,
    )


def format_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def plural_days(days: int) -> str:
    return "1 day" if days == 1 else f"{days} days"


def render_text(metrics: Metrics) -> str:
    record = metrics.record
    if metrics.state == EXPIRED:
        summary = f"expired {plural_days(-metrics.days_until_expiry)} ago"
    elif metrics.state == NOT_YET_VALID:
        summary = (
            f"becomes valid in {plural_days(metrics.days_until_valid)}, "
            f"expires in {plural_days(metrics.days_until_expiry)}"
        )
    else:
        summary = f"expires in {plural_days(metrics.days_until_expiry)}"

    return (
        f"{metrics.state}: certificate '{record.subject}' {summary} "
        f"(not before {format_timestamp(record.not_before)}, "
        f"not after {format_timestamp(record.not_after)})"
    )


def render_influx(metrics: Metrics) -> str:
    record = metrics.record
    fields = [
        ("days_until_expiry", metrics.days_until_expiry),
        ("seconds_until_expiry", metrics.seconds_until_expiry),
        ("valid", int(metrics.state == VALID)),
        ("expired", int(metrics.state == EXPIRED)),
        ("not_yet_valid", int(metrics.state == NOT_YET_VALID)),
        ("not_before", int(record.not_before.timestamp())),
        ("not_after", int(record.not_after.timestamp())),
    ]
    return "\n".join(f"{key}={value}" for key, value in fields)


def render(metrics: Metrics, influx: bool = False) -> str:
    if not isinstance(metrics, Metrics):
        raise InvariantError(f"expected Metrics, got {metrics!r}")
    if influx:
        return render_influx(metrics)
    return render_text(metrics)


def collect_metrics(locator: str, config: FetchConfig) -> Metrics:
    return build_metrics(fetch_certificate(locator, config))


def run_check(
    locator: str,
    servername: str | None = None,
    *,
    influx: bool = False,
    timeout: float = 0,
    verbose: bool = False,
) -> CheckResult:
    """
    Runs the whole check once.

    Raises ConfigurationError for a bad invocation before anything
    is opened; every failure after that is reported as CRITICAL.
    """
    if timeout is not None and not math.isfinite(timeout):
        raise ConfigurationError(f"--timeout must be a finite number, got {timeout}")
    if timeout is not None and timeout < 0:
        raise ConfigurationError("--timeout must not be negative")

    config = FetchConfig(
        servername=servername or None,
        influx=influx,
        deadline=Deadline.from_timeout(timeout),
        verbose=verbose,
    )
    try:
        metrics = collect_metrics(locator, config)
    except FetchError as error:
        return CheckResult(STATE_CRITICAL, f"certcheck failed with error: {error}")
    return CheckResult(STATE_OK, render(metrics, config.influx))


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.option(
    "-c",
    "--cert",
    envvar="CHECK_CERT",
    default="",
    help="URL to certificate. Supports https, tcp, and file schemes.",
)
@click.option(
    "-s",
    "--servername",
    envvar="CHECK_SERVER_NAME",
    help="Custom SNI name to send in handshake.",
)
@click.option(
    "-i", "--influx", envvar="INFLUX_FORMAT", is_flag=True, help="Output line metrics."
)
@click.option(
    "-t",
    "--timeout",
    envvar="CHECK_TIMEOUT",
    type=float,
    default=0,
    show_default=True,
    help="Timeout in seconds, 0 for none.",
)
@click.option(
    "-v",
    "--verbose",
    envvar="CHECK_VERBOSE",
    is_flag=True,
    help="Print progress to stderr.",
)
def main(
    cert: str,
    servername: str | None,
    *,
    influx: bool,
    timeout: float,
    verbose: bool,
) -> None:
    """Inspects certificate data."""
    result = run_check(
        cert, servername, influx=influx, timeout=timeout, verbose=verbose
    )
    click.echo(result.output)
    sys.exit(result.state)


if __name__ == "__main__":
    main()
