import json

import pytest

from nanomem.config.loader import convert_keys, convert_to_camel, load_config, save_config
from nanomem.config.schema import Config


def test_convert_keys_preserves_extra_headers_key_casing() -> None:
    data = {
        "provider": {
            "extraHeaders": {
                "HTTP-Referer": "https://example.com",
                "X-Title": "nanomem",
            }
        }
    }

    converted = convert_keys(data)

    assert converted["provider"]["extra_headers"] == {
        "HTTP-Referer": "https://example.com",
        "X-Title": "nanomem",
    }


def test_convert_keys_converts_nested_fields() -> None:
    data = {"consistency": {"dedupThreshold": 0.9, "neighborK": 3}}

    assert convert_keys(data) == {"consistency": {"dedup_threshold": 0.9, "neighbor_k": 3}}


def test_header_keys_survive_convert_round_trip() -> None:
    snake_data = {
        "provider": {
            "api_base": "https://openrouter.ai/api/v1",
            "extra_headers": {
                "HTTP-Referer": "https://example.com",
                "X-Title": "nanomem",
            },
        },
        "retrieval": {"half_life_days": 30},
    }

    assert convert_keys(convert_to_camel(snake_data)) == snake_data


def test_load_config_reads_camel_case_file(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "store": {"dbPath": str(tmp_path / "mem.db"), "maxBackups": 5},
        "consistency": {"dedupThreshold": 0.9},
        "embedding": {"enabled": False},
    }))

    config = load_config(path)

    assert config.db_path == tmp_path / "mem.db"
    assert config.store.max_backups == 5
    assert config.consistency.dedup_threshold == 0.9
    assert config.consistency.contradiction_threshold == 0.60
    assert not config.embedding.enabled


def test_load_config_falls_back_on_invalid_file(tmp_path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    assert load_config(broken).retrieval.rrf_k == 60

    invalid = tmp_path / "invalid.json"
    invalid.write_text(json.dumps({"consistency": {"dedupThreshold": 0.5, "contradictionThreshold": 0.7}}))
    assert load_config(invalid).consistency.dedup_threshold == 0.92


def test_missing_file_uses_defaults(tmp_path) -> None:
    config = load_config(tmp_path / "absent.json")
    assert config.retrieval.default_top_k == 10
    assert config.extraction.active_confidence_threshold == 0.7


def test_save_then_load(tmp_path) -> None:
    path = tmp_path / "nested" / "config.json"
    config = Config()
    config.retrieval.half_life_days = 30.0
    save_config(config, path)

    assert "halfLifeDays" in path.read_text()
    assert load_config(path).retrieval.half_life_days == 30.0


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NANOMEM_RETRIEVAL__RRF_K", "30")
    monkeypatch.setenv("NANOMEM_EMBEDDING__ENABLED", "false")

    config = Config()

    assert config.retrieval.rrf_k == 30
    assert not config.embedding.enabled
