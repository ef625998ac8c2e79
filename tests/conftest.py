"""Shared fixtures for gateci tests."""

import pytest

from gateci.facts import FactSet
from gateci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def fresh_console():
    """Every test gets its own non-debug console."""
    console = Console(debug=False)
    set_console(console)
    return console


@pytest.fixture
def master_push_facts() -> FactSet:
    """Facts of a push to master with docs publishing on."""
    return FactSet([("masterPush", True), ("isPrTargetingMaster", False), ("publishDocs", True)])


@pytest.fixture
def pr_facts() -> FactSet:
    """Facts of a pull request targeting master."""
    return FactSet([("masterPush", False), ("isPrTargetingMaster", True), ("publishDocs", True)])
