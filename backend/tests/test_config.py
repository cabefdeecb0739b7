import pytest

from coursebilling.core.config import Environment, get_config, load_config
from coursebilling.core.exceptions import ConfigurationError

SETTINGS = """
environment: PRODUCTION
security:
  secret_key: yaml-secret-key-that-is-long-enough-32
billing:
  trial_days: 14
  retry_past_due: true
webhook:
  secret: whsec_from_yaml
"""


@pytest.fixture(autouse=True)
def fresh_config_cache():
    get_config.cache_clear()
    yield
    get_config.cache_clear()


def test_yaml_sections_override_defaults(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(SETTINGS)

    config = get_config(str(path))

    assert config.environment == Environment.PRODUCTION
    assert config.is_production()
    assert config.billing.trial_days == 14
    assert config.billing.retry_past_due is True
    assert config.billing.grace_period_days == 3
    assert config.webhook.secret == "whsec_from_yaml"
    assert get_config(str(path)) is config


def test_load_config_rereads_the_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(SETTINGS)
    first = get_config(str(path))

    path.write_text(SETTINGS.replace("trial_days: 14", "trial_days: 30"))
    second = load_config(str(path))

    assert second is not first
    assert second.billing.trial_days == 30


def test_short_secret_key_is_refused(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text("security:\n  secret_key: short\n")

    with pytest.raises(ValueError):
        get_config(str(path))


@pytest.mark.parametrize("content", ["billing: [unclosed", "- just\n- a list\n"])
def test_unreadable_file_is_a_configuration_error(tmp_path, content):
    path = tmp_path / "settings.yaml"
    path.write_text(content)

    with pytest.raises(ConfigurationError) as exc_info:
        get_config(str(path))

    assert exc_info.value.details["config_key"] == "config_file"


def test_missing_file_is_a_configuration_error(tmp_path):
    with pytest.raises(ConfigurationError):
        get_config(str(tmp_path / "absent.yaml"))
