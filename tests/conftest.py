"""Shared fixtures for unipac tests."""
import pytest

from fakes import FakeRunner


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()
