from pathlib import Path

import pytest

from xsd_engine import MappingLoader, build_schema
from xsd_engine.monitoring import initialize_monitor

FIXTURES = Path(__file__).resolve().parent / "fixtures" / "schema"

XS = "http://www.w3.org/2001/XMLSchema"


def schema_text(body, target_namespace=None):
    """Wrap top-level declarations in an ``xs:schema`` element.

    With a target namespace, ``t:`` is bound to it and local elements are
    qualified.
    """
    extra = ""
    if target_namespace:
        extra = (
            f' targetNamespace="{target_namespace}" xmlns:t="{target_namespace}"'
            ' elementFormDefault="qualified"'
        )
    return f'<xs:schema xmlns:xs="{XS}"{extra}>{body}</xs:schema>'


@pytest.fixture
def fixtures_dir():
    return FIXTURES


@pytest.fixture
def compile_schema():
    """Compile inline declarations served from memory as ``main.xsd``."""

    def _compile(body, target_namespace=None, config=None, documents=None):
        mapping = {"main.xsd": schema_text(body, target_namespace)}
        mapping.update(documents or {})
        return build_schema(["main.xsd"], MappingLoader(mapping), config)

    return _compile


@pytest.fixture(autouse=True)
def fresh_monitor():
    """Every test starts with empty performance counters."""
    return initialize_monitor()
