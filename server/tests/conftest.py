"""Shared test fixtures for OrderBean realtime tests."""

import pathlib

import pytest

REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
SERVER_ROOT = REPO_ROOT / "server"


@pytest.fixture
def repo_root() -> pathlib.Path:
    return REPO_ROOT


@pytest.fixture
def server_root() -> pathlib.Path:
    return SERVER_ROOT
