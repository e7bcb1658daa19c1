import textwrap

import pytest

from errors import InvalidJobKind, NoHandlerRegistered
from handlers import HandlerRegistry, build_registry, load_registrar
from models import JobType


def test_register_and_get():
    registry = HandlerRegistry()

    @registry.handler(JobType.EMAIL)
    def send_email(payload):
        return "sent"

    assert registry.get("email") is send_email
    assert "email" in registry
    assert JobType.IMPORT not in registry
    assert len(registry) == 1


def test_missing_handler():
    with pytest.raises(NoHandlerRegistered) as exc_info:
        HandlerRegistry().get(JobType.VECTORIZATION)
    assert exc_info.value.job_type == "vectorization"


def test_register_unknown_type():
    with pytest.raises(InvalidJobKind):
        HandlerRegistry().register("sms", lambda payload: None)


def test_reregistering_replaces_the_handler():
    registry = HandlerRegistry()
    registry.register("generic", lambda payload: 1)
    second = registry.register("generic", lambda payload: 2)
    assert registry.get("generic") is second
    assert registry.types() == [JobType.GENERIC]


def test_build_registry_from_registrar(tmp_path, monkeypatch):
    (tmp_path / "my_jobs.py").write_text(textwrap.dedent("""
        def register(registry):
            registry.register("email", lambda payload: "sent")
            registry.register("import", lambda payload: "imported")
    """))
    monkeypatch.syspath_prepend(str(tmp_path))

    registry = build_registry("my_jobs:register")
    assert registry.types() == [JobType.EMAIL, JobType.IMPORT]


@pytest.mark.parametrize("path", ["my_jobs", "my_jobs:", ":register"])
def test_load_registrar_rejects_bad_paths(path):
    with pytest.raises(ValueError):
        load_registrar(path)


def test_load_registrar_missing_attribute():
    with pytest.raises(ValueError):
        load_registrar("handlers:does_not_exist")
