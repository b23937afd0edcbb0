"""Every module of the package imports cleanly."""

import importlib
import pkgutil
import sys

import pytest

import pg_deprecation_manager
from pg_deprecation_manager.naming import ParsedName, parse

MODULES = sorted(
    info.name
    for info in pkgutil.walk_packages(pg_deprecation_manager.__path__, prefix="pg_deprecation_manager.")
)


def test_minimum_python_version():
    """pyproject.toml declares Python 3.11 as the minimum"""
    assert sys.version_info >= (3, 11)


@pytest.mark.parametrize("module", MODULES)
def test_module_imports(module):
    assert importlib.import_module(module) is not None


def test_parsed_name_fields():
    """ParsedNameのフィールドがdatetime.dateを隠さないこと"""
    assert "deprecated_on" in ParsedName.__dataclass_fields__
    assert parse("orders_deprecated_20250928_unu").deprecated_on.isoformat() == "2025-09-28"
