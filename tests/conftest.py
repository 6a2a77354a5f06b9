"""
Shared fixtures: a small catalog, a temporary database, and an engine on top.
"""

import copy
import os
import tempfile
from datetime import datetime

import pytest

from fulfillment_engine.config.loader import parse_engine_config
from fulfillment_engine.core.lifecycle import RequestLifecycle
from fulfillment_engine.storage.models import Actor, Role
from fulfillment_engine.storage.repository import initialize_schema

BASE_CONFIG = {
    "admins": ["admin"],
    "services": {
        "design": {"price": 20, "sla": {"days": 1}},
        "post": {"price": 5, "sla": {"hours": 4}},
        "copy": {"price": 8},
    },
    "bundles": {
        "kit": {"price": 100, "sla": {"days": 3}},
    },
    "vendors": {
        "inhouse": {"internal": True, "weight": 1, "designers": ["alice", "bob"]},
        "acme_vendor": {
            "weight": 1,
            "designers": ["vince"],
            "service_costs": {"design": 9, "post": 2, "kit": 40},
        },
    },
}

ADMIN = Actor("admin", Role.ADMIN)
ALICE = Actor("alice", Role.INTERNAL_DESIGNER)
BOB = Actor("bob", Role.INTERNAL_DESIGNER)
VINCE = Actor("vince", Role.VENDOR_DESIGNER)
CLIENT = Actor("client-1", Role.CLIENT)

JAN_10 = datetime(2024, 1, 10, 9, 0, 0)


def make_config(**overrides):
    """Build an EngineConfig from BASE_CONFIG with top-level sections replaced."""
    raw = copy.deepcopy(BASE_CONFIG)
    raw.update(overrides)
    return parse_engine_config(raw)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        yield path


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def engine(config, db_path):
    return RequestLifecycle(config, db_path=db_path)
