# tests/test_config.py
import pytest

from adrec.core.config import PipelineConfig
from adrec.core.errors import ConfigError


def test_defaults_are_valid():
    config = PipelineConfig().validate()

    assert config.scoring_max_attempts == 3
    assert config.archive_flush_bytes == 5 * 1024 * 1024
    assert config.archive_flush_interval == 60.0
    assert config.archive_prefix == "ads/"
    assert config.click_archive_prefix == "clicks/"
    assert config.batch_size == 10


def test_from_env_coerces_types():
    config = PipelineConfig.from_env({
        "ADREC_SCORING_ENDPOINT": "http://model:8080/invocations",
        "ADREC_SCORING_TIMEOUT": "0.5",
        "ADREC_SCORING_MAX_ATTEMPTS": "5",
        "ADREC_HASHED_FIELDS": "user_id, merchant",
        "ADREC_PARTITIONS": "0,1,2",
        "ADREC_KAFKA_BROKERS": "k1:9092,k2:9092",
        "ADREC_REDIS_URL": "redis://cache:6379/0",
        "UNRELATED": "ignored",
    })

    assert config.scoring_endpoint == "http://model:8080/invocations"
    assert config.scoring_timeout == 0.5
    assert config.scoring_max_attempts == 5
    assert config.hashed_fields == ["user_id", "merchant"]
    assert config.partitions == [0, 1, 2]
    assert config.kafka_brokers == ["k1:9092", "k2:9092"]
    assert config.redis_url == "redis://cache:6379/0"


def test_empty_optional_value_means_unset():
    config = PipelineConfig.from_env({"ADREC_ARCHIVE_ROOT": ""})

    assert config.archive_root is None


def test_from_env_rejects_bad_numbers():
    with pytest.raises(ConfigError):
        PipelineConfig.from_env({"ADREC_SCORING_TIMEOUT": "fast"})
    with pytest.raises(ConfigError):
        PipelineConfig.from_env({"ADREC_PARTITIONS": "0,one"})


def test_from_yaml_with_env_override(tmp_path):
    path = tmp_path / "pipeline.yaml"
    path.write_text(
        "scoring_endpoint: http://yaml:8080/score\n"
        "notification_threshold: 0.7\n"
        "partitions: [0, 1]\n"
    )

    config = PipelineConfig.from_yaml(str(path), environ={"ADREC_NOTIFICATION_THRESHOLD": "0.9"})

    assert config.scoring_endpoint == "http://yaml:8080/score"
    assert config.notification_threshold == 0.9
    assert config.partitions == [0, 1]


def test_from_yaml_rejects_unknown_keys(tmp_path):
    path = tmp_path / "pipeline.yaml"
    path.write_text("scoring_endpoitn: http://typo\n")

    with pytest.raises(ConfigError):
        PipelineConfig.from_yaml(str(path), environ={})


@pytest.mark.parametrize("overrides", [
    {"scoring_timeout": 0},
    {"scoring_max_attempts": 0},
    {"notification_threshold": 1.5},
    {"archive_flush_size": 600, "archive_buffer_capacity": 500},
    {"max_vocabulary_size": 1},
    {"encoded_fields": []},
    {"encoded_fields": ["user_id", "user_id"]},
    {"hashed_fields": ["session_id"]},
    {"shutdown_grace_period": -1},
    {"click_archive_prefix": "ads/"},
])
def test_validate_rejects(overrides):
    with pytest.raises(ConfigError):
        PipelineConfig(**overrides).validate()


def test_empty_click_archive_prefix_disables_it():
    config = PipelineConfig.from_env({"ADREC_CLICK_ARCHIVE_PREFIX": ""})

    assert config.click_archive_prefix == ""
