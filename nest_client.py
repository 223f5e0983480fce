"""
Nest Cloud Status Client

A Python client for reading thermostat status from the Nest cloud service.
Logs in with account credentials, fetches the mobile status document and
normalizes it into structures and their devices.
"""

from dotenv import load_dotenv
load_dotenv()

import json
import logging
import sys
import time
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

import httpx
import os

_LOGGER = logging.getLogger(__name__)


BASE_URL = "https://home.nest.com"
LOGIN_PATH = "/user/login"
STATUS_PATH_TEMPLATE = "/v2/mobile/user.{userid}"
PROTOCOL_VERSION = "1"

# Device references in a structure look like "device.<id>"
DEVICE_PREFIX_LENGTH = 7

DEFAULT_POLL_INTERVAL = 60
DEFAULT_TIMEOUT = 30.0

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
}

# Environment variable names for configuration
ENV_USERNAME = "NEST_USERNAME"
ENV_PASSWORD = "NEST_PASSWORD"
ENV_POLL_INTERVAL = "NEST_POLL_INTERVAL"


# ========== Errors ==========

class NestError(Exception):
    """Base exception for Nest client errors."""
    pass


class AuthError(NestError):
    """Login failed or returned an unusable session."""
    pass


class NotAuthenticatedError(NestError):
    """A status fetch was attempted before a successful login."""
    pass


class FetchError(NestError):
    """The status request failed at the transport or HTTP level."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NormalizationFault(NestError):
    """One structure or device in the status document could not be read."""

    def __init__(
        self,
        message: str,
        structure_id: str | None = None,
        device_id: str | None = None,
        field: str | None = None,
    ):
        super().__init__(message)
        self.structure_id = structure_id
        self.device_id = device_id
        self.field = field

    def __str__(self) -> str:
        where = f"structure {self.structure_id}"
        if self.device_id is not None:
            where += f", device {self.device_id}"
        if self.field is not None:
            where += f", field {self.field!r}"
        return f"{where}: {self.args[0]}"


# ========== Session ==========

@dataclass(frozen=True)
class Credentials:
    """Account credentials, fixed for the life of the client."""
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class SessionHandle:
    """Authenticated context returned by a successful login."""
    access_token: str
    userid: str
    transport_url: str

    @classmethod
    def from_response(cls, data: Any) -> "SessionHandle":
        """Create a SessionHandle from the login response body.

        Raises:
            AuthError: If a field is missing, empty or not a string.
        """
        if not isinstance(data, dict):
            raise AuthError("Login response is not a JSON object.")

        urls = data.get("urls")
        values = {
            "access_token": data.get("access_token"),
            "userid": data.get("userid"),
            "urls.transport_url": urls.get("transport_url") if isinstance(urls, dict) else None,
        }
        missing = [name for name, value in values.items() if not isinstance(value, str) or not value]
        if missing:
            raise AuthError(f"Login response missing {', '.join(missing)}.")

        return cls(
            access_token=values["access_token"],
            userid=values["userid"],
            transport_url=values["urls.transport_url"],
        )


@dataclass(frozen=True)
class AuthenticatedSession:
    """A logged-in session with its status request already built.

    The URL and headers are computed once per login and reused verbatim by
    every status fetch. The token inside them is never rotated.
    """
    handle: SessionHandle
    status_url: str
    headers: Mapping[str, str]

    @classmethod
    def from_handle(cls, handle: SessionHandle) -> "AuthenticatedSession":
        status_url = handle.transport_url.rstrip("/") + STATUS_PATH_TEMPLATE.format(
            userid=handle.userid
        )
        headers = {
            "Authorization": f"Basic {handle.access_token}",
            "X-nl-user-id": handle.userid,
            "X-nl-protocol-version": PROTOCOL_VERSION,
        }
        return cls(handle=handle, status_url=status_url, headers=MappingProxyType(headers))


# ========== Status Document ==========

@dataclass
class RawStatusDocument:
    """The four id-keyed sections of the mobile status payload."""
    structures: dict[str, Any] = field(default_factory=dict)
    devices: dict[str, Any] = field(default_factory=dict)
    shared: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    # Attribute name -> key in the wire payload
    SECTIONS = {
        "structures": "structure",
        "devices": "device",
        "shared": "shared",
        "metadata": "metadata",
    }

    @classmethod
    def empty(cls) -> "RawStatusDocument":
        return cls()

    @classmethod
    def from_json(cls, payload: Any) -> "RawStatusDocument":
        """Build a document from the decoded response body.

        Missing or non-object sections are replaced by empty mappings.
        """
        if not isinstance(payload, dict):
            _LOGGER.warning(
                "Status payload is %s, not an object; using an empty document",
                type(payload).__name__,
            )
            return cls.empty()

        sections = {}
        for attr, key in cls.SECTIONS.items():
            section = payload.get(key, {})
            if not isinstance(section, dict):
                _LOGGER.warning("Status section %r is not an object; ignoring it", key)
                section = {}
            sections[attr] = section
        return cls(**sections)


@dataclass(frozen=True)
class DeviceDetails:
    """Normalized view of one thermostat."""
    id: str
    timestamp: float  # epoch milliseconds
    current_humidity: float
    target_humidity: float
    current_temperature: float
    target_temperature: float
    target_temperature_type: str
    target_temperature_low: float
    target_temperature_high: float
    name: str

    @property
    def local_time(self) -> datetime:
        """The device timestamp as an aware datetime in the local timezone."""
        return datetime.fromtimestamp(int(self.timestamp / 1000)).astimezone()

    def __str__(self) -> str:
        return (
            f"\tDevice: {self.name}\n"
            f"\t\tTime: {self.local_time:%Y-%m-%d %H:%M:%S %z %Z}\n"
            f"\t\tCurrTemp: {self.current_temperature:2.1f}\n"
            f"\t\tCurrHumidity: {self.current_humidity:2.1f}\n\n"
        )


@dataclass(frozen=True)
class StructureDetails:
    """Normalized view of one structure (home) and the devices it lists."""
    id: str
    name: str
    timestamp: float
    away: bool
    location: str
    postal_code: str
    street_address: str
    devices: tuple[DeviceDetails, ...] = ()

    def __str__(self) -> str:
        return f"{self.name}\n" + "".join(str(device) for device in self.devices)


@dataclass(frozen=True)
class ParsedStatus(Sequence):
    """The structures read from one status document.

    Behaves as a sequence of StructureDetails. Faults hit while reading the
    document are kept alongside but do not take part in equality.
    """
    structures: tuple[StructureDetails, ...] = ()
    faults: tuple[NormalizationFault, ...] = field(default=(), compare=False)

    def __getitem__(self, index: int | slice):
        return self.structures[index]

    def __len__(self) -> int:
        return len(self.structures)

    def __iter__(self) -> Iterator[StructureDetails]:
        return iter(self.structures)

    def __str__(self) -> str:
        return render_status(self)

    def to_dict(self) -> dict:
        return {
            "structures": [asdict(structure) for structure in self.structures],
            "faults": [str(fault) for fault in self.faults],
        }


def render_status(status: Iterable[StructureDetails]) -> str:
    """Render structures and their devices as indented text."""
    return "".join(str(structure) for structure in status)


# ========== Normalization ==========

class _Record:
    """Typed access to one JSON object of the status document.

    Every accessor raises NormalizationFault carrying the structure/device
    context when the key is absent or holds the wrong JSON type.
    """

    def __init__(
        self,
        values: Any,
        section: str,
        structure_id: str,
        device_id: str | None = None,
    ):
        self.section = section
        self.structure_id = structure_id
        self.device_id = device_id
        if not isinstance(values, dict):
            raise self.fault(f"{section} entry is {type(values).__name__}, not an object")
        self.values = values

    @classmethod
    def lookup(
        cls,
        section_values: Mapping[str, Any],
        section: str,
        structure_id: str,
        device_id: str,
    ) -> "_Record":
        if device_id not in section_values:
            raise NormalizationFault(
                f"no {section} entry for device",
                structure_id=structure_id,
                device_id=device_id,
            )
        return cls(section_values[device_id], section, structure_id, device_id)

    def fault(self, message: str, key: str | None = None) -> NormalizationFault:
        return NormalizationFault(
            message,
            structure_id=self.structure_id,
            device_id=self.device_id,
            field=key,
        )

    def _get(self, key: str, kinds: type | tuple[type, ...], expected: str) -> Any:
        if key not in self.values:
            raise self.fault(f"missing in {self.section}", key)
        value = self.values[key]
        # bool is a subclass of int but never a valid number here
        if not isinstance(value, kinds) or (expected == "number" and isinstance(value, bool)):
            raise self.fault(f"expected {expected}, got {type(value).__name__}", key)
        return value

    def string(self, key: str) -> str:
        return self._get(key, str, "string")

    def number(self, key: str) -> float:
        return float(self._get(key, (int, float), "number"))

    def timestamp(self, key: str) -> float:
        """Read an epoch-millisecond number that converts to a local datetime."""
        value = self.number(key)
        try:
            datetime.fromtimestamp(int(value / 1000)).astimezone()
        except (OverflowError, OSError, ValueError) as err:
            raise self.fault(f"timestamp {value!r} out of range", key) from err
        return value

    def boolean(self, key: str) -> bool:
        return self._get(key, bool, "boolean")

    def array(self, key: str) -> list:
        return list(self._get(key, list, "array"))


class StatusNormalizer:
    """Rebuilds the structure -> device graph from a RawStatusDocument.

    Structures come out in document order. A fault in a structure's own
    fields drops that structure; a fault in one device drops only that
    device. All faults are logged and returned with the result.
    """

    def normalize(self, document: RawStatusDocument) -> ParsedStatus:
        structures = []
        faults = []

        for structure_id, values in document.structures.items():
            try:
                structure = self._parse_structure(document, structure_id, values, faults)
            except NormalizationFault as fault:
                self._record_fault(fault, faults)
                continue
            structures.append(structure)

        _LOGGER.debug(
            "Normalized %d structures with %d faults", len(structures), len(faults)
        )
        return ParsedStatus(structures=tuple(structures), faults=tuple(faults))

    def _parse_structure(
        self,
        document: RawStatusDocument,
        structure_id: str,
        values: Any,
        faults: list[NormalizationFault],
    ) -> StructureDetails:
        record = _Record(values, "structure", structure_id)
        name = record.string("name")
        timestamp = record.number("$timestamp")
        away = record.boolean("away")
        location = record.string("location")
        postal_code = record.string("postal_code")
        street_address = record.string("street_address")
        references = record.array("devices")

        devices = []
        for reference in references:
            try:
                devices.append(self._parse_device(document, structure_id, reference))
            except NormalizationFault as fault:
                self._record_fault(fault, faults)

        return StructureDetails(
            id=structure_id,
            name=name,
            timestamp=timestamp,
            away=away,
            location=location,
            postal_code=postal_code,
            street_address=street_address,
            devices=tuple(devices),
        )

    def _parse_device(
        self,
        document: RawStatusDocument,
        structure_id: str,
        reference: Any,
    ) -> DeviceDetails:
        if not isinstance(reference, str) or len(reference) <= DEVICE_PREFIX_LENGTH:
            raise NormalizationFault(
                f"invalid device reference {reference!r}",
                structure_id=structure_id,
                field="devices",
            )
        device_id = reference[DEVICE_PREFIX_LENGTH:]

        device = _Record.lookup(document.devices, "device", structure_id, device_id)
        shared = _Record.lookup(document.shared, "shared", structure_id, device_id)
        metadata = _Record.lookup(document.metadata, "metadata", structure_id, device_id)

        return DeviceDetails(
            id=device_id,
            timestamp=metadata.timestamp("$timestamp"),
            current_humidity=device.number("current_humidity"),
            target_humidity=device.number("target_humidity"),
            current_temperature=shared.number("current_temperature"),
            target_temperature=shared.number("target_temperature"),
            target_temperature_type=shared.string("target_temperature_type"),
            target_temperature_low=shared.number("target_temperature_low"),
            target_temperature_high=shared.number("target_temperature_high"),
            name=shared.string("name"),
        )

    @staticmethod
    def _record_fault(fault: NormalizationFault, faults: list[NormalizationFault]) -> None:
        _LOGGER.warning("Skipping malformed status entry: %s", fault)
        faults.append(fault)


# ========== Client ==========

class NestClient:
    """
    Client for the Nest cloud status API.

    Starts unauthenticated. login() creates an AuthenticatedSession holding
    the prebuilt status request; fetch_status() reuses it on every call.
    """

    def __init__(
        self,
        username: str | None = None,
        password: str | None = None,
        base_url: str = BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        normalizer: StatusNormalizer | None = None,
    ):
        """
        Initialize Nest client.

        Args:
            username: Nest account email (or set NEST_USERNAME env var)
            password: Nest account password (or set NEST_PASSWORD env var)
            base_url: Login host
            timeout: Per-request timeout in seconds
            normalizer: StatusNormalizer used by get_status()
        """
        self.credentials = Credentials(
            username=username or os.environ.get(ENV_USERNAME, ""),
            password=password or os.environ.get(ENV_PASSWORD, ""),
        )
        self.normalizer = normalizer or StatusNormalizer()
        self._session: AuthenticatedSession | None = None
        self._client = httpx.Client(
            base_url=base_url,
            headers=DEFAULT_HEADERS,
            http2=True,
            timeout=timeout,
        )

    @property
    def session(self) -> AuthenticatedSession | None:
        return self._session

    @property
    def handle(self) -> SessionHandle | None:
        return self._session.handle if self._session else None

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    # ========== Authentication ==========

    def login(self) -> SessionHandle:
        """
        Login to Nest and build the authenticated session.

        Returns:
            The SessionHandle parsed from the login response.

        Raises:
            AuthError: On missing credentials, transport failure, an HTTP
                error status or an unusable response body.
        """
        if not self.credentials.username or not self.credentials.password:
            raise AuthError("Username and password required for login.")

        _LOGGER.debug("Logging in as %s", self.credentials.username)
        try:
            response = self._client.post(
                LOGIN_PATH,
                data={
                    "username": self.credentials.username,
                    "password": self.credentials.password,
                },
            )
        except httpx.HTTPError as err:
            raise AuthError(f"Login request failed: {err}") from err

        if not response.is_success:
            raise AuthError(f"Login failed: {response.status_code} {response.text}")

        try:
            data = response.json()
        except ValueError as err:
            raise AuthError("Login response is not valid JSON.") from err

        handle = SessionHandle.from_response(data)
        self._session = AuthenticatedSession.from_handle(handle)
        _LOGGER.debug("Logged in as user %s via %s", handle.userid, handle.transport_url)
        return handle

    # ========== Status ==========

    def fetch_status(self) -> RawStatusDocument:
        """
        Fetch the raw status document for the logged-in user.

        Returns:
            The decoded document. A body that is not a JSON object yields an
            empty document.

        Raises:
            NotAuthenticatedError: If login() has not succeeded yet.
            FetchError: On transport failure or an HTTP error status.
        """
        session = self._session
        if session is None:
            raise NotAuthenticatedError("Not authenticated. Call login() first.")

        _LOGGER.debug("Fetching status from %s", session.status_url)
        try:
            response = self._client.get(session.status_url, headers=session.headers)
        except httpx.HTTPError as err:
            raise FetchError(f"Status request failed: {err}") from err

        if not response.is_success:
            raise FetchError(
                f"Status request failed: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError:
            _LOGGER.warning("Status response is not valid JSON; using an empty document")
            return RawStatusDocument.empty()
        return RawStatusDocument.from_json(payload)

    def get_status(self) -> ParsedStatus:
        """Fetch and normalize one status snapshot."""
        return self.normalizer.normalize(self.fetch_status())

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "NestClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()


# ========== Polling ==========

def poll_status(
    client: NestClient,
    interval: float,
    on_status: Callable[[ParsedStatus], None],
    iterations: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Poll the client for status on a fixed interval.

    A FetchError skips the cycle; authentication errors propagate.

    Args:
        client: A logged-in NestClient
        interval: Seconds to wait between cycles
        on_status: Called with each successfully parsed snapshot
        iterations: Number of cycles to run, or None to run forever
        sleep: Sleep function, replaceable for tests

    Returns:
        Number of cycles that produced a snapshot.
    """
    completed = 0
    cycle = 0
    while iterations is None or cycle < iterations:
        if cycle:
            sleep(interval)
        cycle += 1

        try:
            status = client.get_status()
        except FetchError as err:
            _LOGGER.error("Skipping poll cycle %d: %s", cycle, err)
            continue

        completed += 1
        on_status(status)
    return completed


# ========== CLI Interface ==========

def main(argv: Sequence[str] | None = None) -> int:
    """Command-line interface for the Nest status client."""
    import argparse
    import getpass

    parser = argparse.ArgumentParser(
        description="Nest Cloud Status Client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s login                       Check credentials and show the session
  %(prog)s status                      Show status of all structures
  %(prog)s status --json               Show status as JSON
  %(prog)s watch                       Poll status every NEST_POLL_INTERVAL seconds
  %(prog)s watch -i 30 -n 10           Poll every 30 seconds, 10 times
        """,
    )

    parser.add_argument(
        "-u", "--username",
        help="Nest username (or set NEST_USERNAME env var)",
        default=os.environ.get(ENV_USERNAME),
    )
    parser.add_argument(
        "-p", "--password",
        help="Nest password (or set NEST_PASSWORD env var)",
        default=os.environ.get(ENV_PASSWORD),
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("login", help="Login and show the session details")

    status_parser = subparsers.add_parser("status", help="Show status once")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    watch_parser = subparsers.add_parser("watch", help="Poll status on an interval")
    watch_parser.add_argument(
        "-i", "--interval",
        type=float,
        default=float(os.environ.get(ENV_POLL_INTERVAL, DEFAULT_POLL_INTERVAL)),
        help="Seconds between polls (or set NEST_POLL_INTERVAL env var)",
    )
    watch_parser.add_argument(
        "-n", "--count",
        type=int,
        default=None,
        help="Stop after this many polls",
    )

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    username = args.username
    password = args.password
    if not username:
        username = input("Nest Username: ")
    if not password:
        password = getpass.getpass("Nest Password: ")

    try:
        with NestClient(username=username, password=password) as client:
            _LOGGER.info("Logging in...")
            handle = client.login()

            if args.command == "login":
                print(f"User ID: {handle.userid}")
                print(f"Transport URL: {handle.transport_url}")

            elif args.command == "status":
                status = client.get_status()
                if args.json:
                    print(json.dumps(status.to_dict(), indent=2))
                else:
                    print(status, end="")

            elif args.command == "watch":
                try:
                    poll_status(
                        client,
                        args.interval,
                        lambda status: print(status, end="", flush=True),
                        iterations=args.count,
                    )
                except KeyboardInterrupt:
                    print("Stopped.")

    except AuthError as e:
        print(f"Authentication error: {e}")
        return 1
    except NestError as e:
        print(f"API error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
