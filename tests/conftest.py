"""Shared fixtures."""

import pytest
from PySide6 import QtCore


@pytest.fixture(scope="session")
def qapp():
    """One QCoreApplication for the whole run; queued signals need an event loop."""
    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication([])
    yield app
