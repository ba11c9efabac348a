"""
Pytest configuration and fixtures for tmtk tests.
"""
import pytest

from tmtk.tests.scenario import standard_toolchain, write_project


@pytest.fixture
def fake_toolchain():
    return standard_toolchain()


@pytest.fixture
def project(tmp_path):
    return write_project(tmp_path / "project")
