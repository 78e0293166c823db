"""
Pytest fixtures for csm-admin tests
"""
import base64
import json
import os
import sys
from unittest.mock import MagicMock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from csm_admin.client.circuit_breaker import CircuitBreaker  # noqa: E402
from csm_admin.groups import StaticContext  # noqa: E402
from csm_admin.nodeset import NodeSet  # noqa: E402
from csm_admin.xname import parse  # noqa: E402


def make_response(status=200, payload=None, text=None, headers=None):
    """Stand-in for requests.Response."""
    response = MagicMock()
    response.status_code = status
    response.headers = dict(headers or {})
    if text is not None:
        body = text
    elif payload is not None:
        body = json.dumps(payload)
    else:
        body = ""
    response.content = body.encode("utf-8")
    response.text = body

    def decode():
        return json.loads(body)

    response.json.side_effect = decode
    return response


def make_jwt(claims):
    """Unsigned JWT carrying claims."""

    def encode(data):
        return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

    return f"{encode({'alg': 'RS256'})}.{encode(claims)}.signature"


@pytest.fixture(autouse=True)
def clean_circuits():
    """Circuit breakers are process-wide; start every test closed."""
    CircuitBreaker.clear_registry()
    yield
    CircuitBreaker.clear_registry()


@pytest.fixture
def inventory_nodes():
    """Nodes of a small two-cabinet system."""
    return NodeSet.from_hostlist(
        "x1000c0s0b0n[0-3],x1000c0s1b0n[0-1],x1000c1s0b0n[0-1],x1001c0s0b0n0"
    )


@pytest.fixture
def inventory_groups():
    return {
        "compute": NodeSet.from_hostlist("x1000c0s0b0n[0-3],x1000c0s1b0n[0-1],x1000c1s0b0n[0-1]"),
        "uan": NodeSet.from_hostlist("x1001c0s0b0n0"),
        "maintenance": NodeSet.from_hostlist("x1000c0s0b0n1,x1000c1s0b0n0"),
        "gpu": NodeSet.from_hostlist("x1000c0s1b0n[0-1]"),
        # A group whose name is also a valid identifier
        "x1000c0": NodeSet.from_hostlist("x1001c0s0b0n0"),
    }


@pytest.fixture
def static_context(inventory_nodes, inventory_groups):
    return StaticContext(
        nodes=inventory_nodes,
        groups=inventory_groups,
        partitions={"p1": NodeSet.from_hostlist("x1000c0s0b0n[0-1]")},
        nids={1: parse("x1000c0s0b0n0"), 2: parse("x1000c0s0b0n1"), 3: parse("x1000c0s0b0n2")},
    )


@pytest.fixture
def quad():
    """The four nodes of x1000c0s0b0."""
    return NodeSet.from_hostlist("x1000c0s0b0n[0-3]")
