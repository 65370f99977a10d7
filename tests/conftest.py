"""
Pytest configuration and shared fixtures.
"""

import pytest

from shipgate.identity import LocalIssuer
from shipgate.broker import CredentialBroker
from shipgate.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    """Keep scheduler progress output out of test logs."""
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def issuer():
    return LocalIssuer(url="https://token.actions.example.com", audience="shipgate")


@pytest.fixture
def broker(issuer):
    return CredentialBroker([issuer.trusted], grant_ttl=600)


@pytest.fixture
def record():
    """Action factory that records execution order."""
    calls = []

    def make(name, *, fail=False, produce=None):
        def action(ctx):
            calls.append(name)
            if produce:
                for art_name, data in produce.items():
                    ctx.put_artifact(art_name, data)
            if fail:
                raise RuntimeError(f"{name} exploded")
        action.__name__ = name
        return action

    make.calls = calls
    return make
