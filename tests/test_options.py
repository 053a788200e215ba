import pytest

from sophonminer.options import (
    Invoke,
    Settings,
    apply_if,
    error,
    if_,
    options,
    override,
    unset,
)


class Service:
    pass


def test_settings_have_one_slot_per_invoke():
    settings = Settings()
    assert len(settings.invokes) == len(Invoke)
    assert all(slot is None for slot in settings.invokes)
    assert settings.modules == {}


def test_first_invoke_takes_first_slot():
    def hook():
        return "journal"

    settings = Settings()
    override(Invoke.INIT_JOURNAL, hook)(settings)
    assert settings.invokes[0] is hook
    assert settings.invokes[1:] == [None] * (len(Invoke) - 1)


def test_override_wraps_plain_value():
    settings = Settings()
    override(int, 42)(settings)
    assert settings.modules[int]() == 42


def test_override_keeps_constructor():
    def build():
        return "built"

    settings = Settings()
    override(Service, build)(settings)
    assert settings.modules[Service]() == "built"


def test_override_invoke_sets_slot():
    def hook():
        return "ran"

    settings = Settings()
    override(Invoke.SET_API_ENDPOINT, hook)(settings)
    assert settings.invokes[Invoke.SET_API_ENDPOINT] is hook
    assert settings.modules == {}


def test_later_override_wins():
    settings = Settings()
    options(override("name", "first"), override("name", "second"))(settings)
    assert settings.modules["name"]() == "second"


def test_unset_removes_module_and_invoke():
    settings = Settings()
    options(
        override(str, "text"),
        override(Invoke.EXTRACT_API, lambda: None),
        unset(str),
        unset(Invoke.EXTRACT_API),
    )(settings)
    assert str not in settings.modules
    assert settings.invokes[Invoke.EXTRACT_API] is None


def test_unset_missing_key_is_harmless():
    settings = Settings()
    override(int, 1)(settings)
    unset(float)(settings)
    assert list(settings.modules) == [int]


def test_error_stops_later_options():
    settings = Settings()
    failure = RuntimeError("invalid config")
    with pytest.raises(RuntimeError, match="invalid config"):
        options(override(int, 1), error(failure), override(float, 2.0))(settings)
    assert int in settings.modules
    assert float not in settings.modules


def test_if_applies_only_when_true():
    settings = Settings()
    options(if_(False, override(int, 1)), if_(True, override(float, 2.5)))(settings)
    assert int not in settings.modules
    assert settings.modules[float]() == 2.5


def test_apply_if_checks_current_settings():
    settings = Settings()
    opt = options(
        override(int, 7),
        apply_if(lambda s: int in s.modules, override(bytes, b"yes")),
        apply_if(lambda s: float in s.modules, override(str, "no")),
    )
    opt(settings)
    assert settings.modules[bytes]() == b"yes"
    assert str not in settings.modules