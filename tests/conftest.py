"""Pytest configuration and fixtures for Nest client tests."""

from typing import Any

import pytest

from nest_client import BASE_URL, NestClient, RawStatusDocument

LOGIN_URL = f"{BASE_URL}/user/login"
TRANSPORT_URL = "https://example"
STATUS_URL = f"{TRANSPORT_URL}/v2/mobile/user.u1"


def build_status_payload(structure_count: int, device_count: int) -> dict[str, Any]:
    """Build a consistent status payload.

    Args:
        structure_count: Number of structures to create.
        device_count: Number of devices per structure.

    Returns:
        A dictionary in the wire format of the status endpoint.

    """
    payload: dict[str, Any] = {"structure": {}, "device": {}, "shared": {}, "metadata": {}}
    for s in range(structure_count):
        device_ids = [f"s{s}d{d}" for d in range(device_count)]
        payload["structure"][f"s{s}"] = {
            "name": f"Structure {s}",
            "$timestamp": 1000 + s,
            "away": bool(s % 2),
            "location": f"loc{s}",
            "postal_code": f"0000{s}",
            "street_address": f"{s} Main St",
            "devices": [f"device.{device_id}" for device_id in device_ids],
        }
        for d, device_id in enumerate(device_ids):
            payload["device"][device_id] = {
                "current_humidity": 40.0 + d,
                "target_humidity": 45.0 + d,
            }
            payload["shared"][device_id] = {
                "name": f"Thermo {device_id}",
                "current_temperature": 20.5 + d,
                "target_temperature": 22.0,
                "target_temperature_type": "heat",
                "target_temperature_low": 19.0,
                "target_temperature_high": 24.0,
            }
            payload["metadata"][device_id] = {"$timestamp": 5000 + d}
    return payload


@pytest.fixture
def sample_login_response() -> dict[str, Any]:
    """Fixture providing a sample login API response."""
    return {
        "access_token": "tok123",
        "userid": "u1",
        "urls": {
            "transport_url": TRANSPORT_URL,
            "rubyapi_url": "https://home.nest.com/",
        },
    }


@pytest.fixture
def sample_status_payload() -> dict[str, Any]:
    """Fixture providing a status payload with one structure and one device."""
    return {
        "structure": {
            "s1": {
                "name": "Home",
                "$timestamp": 1000,
                "away": False,
                "location": "loc",
                "postal_code": "00000",
                "street_address": "addr",
                "devices": ["device.d1"],
            },
        },
        "device": {"d1": {"current_humidity": 40.0, "target_humidity": 45.0}},
        "shared": {
            "d1": {
                "name": "Thermo",
                "current_temperature": 21.5,
                "target_temperature": 22.0,
                "target_temperature_type": "heat",
                "target_temperature_low": 20.0,
                "target_temperature_high": 23.0,
            },
        },
        "metadata": {"d1": {"$timestamp": 999}},
    }


@pytest.fixture
def sample_document(sample_status_payload: dict[str, Any]) -> RawStatusDocument:
    """Fixture providing the sample payload as a RawStatusDocument."""
    return RawStatusDocument.from_json(sample_status_payload)


@pytest.fixture
def client():
    """Fixture providing an unauthenticated client with test credentials."""
    with NestClient(username="user", password="secret") as nest:
        yield nest
