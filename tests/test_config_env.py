#!/usr/bin/env python3
"""config_env YAML-first guard and typed config regressions."""

import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config_env import apply_env_overrides, build_keeper_config, load_config


def _set_env(updates: dict[str, str | None]) -> dict[str, str | None]:
    prev: dict[str, str | None] = {}
    for key, value in updates.items():
        prev[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return prev


def _restore_env(prev: dict[str, str | None]) -> None:
    for key, value in prev.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def test_whitelisted_env_overrides_apply() -> None:
    cfg = {"keeper": {"network": "optimism", "markets": []}, "submitter": {"confirmations": 1}}
    prev = _set_env(
        {
            "KEEPER_NETWORK": "optimism-goerli",
            "KEEPER_MARKETS": "sETHPERP, sBTCPERP",
            "KEEPER_CONFIRMATIONS": "3",
            "KEEPER_DRY_RUN": "yes",
        }
    )
    try:
        out = apply_env_overrides(cfg)
    finally:
        _restore_env(prev)

    assert out["keeper"]["network"] == "optimism-goerli"
    assert out["keeper"]["markets"] == ["sETHPERP", "sBTCPERP"]
    assert out["keeper"]["dry_run"] is True
    assert out["submitter"]["confirmations"] == 3
    assert cfg["keeper"]["network"] == "optimism"


def test_fetch_limits_are_not_env_overridable() -> None:
    cfg = {"fetcher": {"max_page_size": 1000}}
    prev = _set_env({"KEEPER_MAX_PAGE_SIZE": "5"})
    try:
        out = apply_env_overrides(cfg, environ_keys=["KEEPER_MAX_PAGE_SIZE"])
    finally:
        _restore_env(prev)

    assert out["fetcher"]["max_page_size"] == 1000


def test_shipped_yaml_builds_default_config() -> None:
    raw = load_config(Path(__file__).resolve().parents[1] / "keeper.yaml")
    config = build_keeper_config(raw)

    assert config.network == "optimism"
    assert config.from_block is None
    assert config.fetcher.max_page_size == 1000
    assert config.fetcher.restricted_reads == ["getPositionAddressesPage"]
    assert config.submitter.confirmations == 1
    assert config.orders.enabled is True
    assert config.poll_interval_seconds == 1.0


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValueError):
        build_keeper_config({"keeper": {"backfill_mode": "replay"}})
    with pytest.raises(ValueError):
        build_keeper_config({"fetcher": {"max_calls_per_batch": 0}})
    with pytest.raises(ValueError):
        build_keeper_config({"submitter": {"confirmations": 0}})


def test_missing_config_file_raises(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_env_list_accepts_comma_and_json_forms(monkeypatch) -> None:
    from env_utils import env_list

    monkeypatch.setenv("KEEPER_PRIVATE_KEYS", "0xaa, 0xbb")
    assert env_list("KEEPER_PRIVATE_KEYS", []) == ["0xaa", "0xbb"]
    monkeypatch.setenv("KEEPER_PRIVATE_KEYS", '["0xcc"]')
    assert env_list("KEEPER_PRIVATE_KEYS", []) == ["0xcc"]
    monkeypatch.setenv("KEEPER_PRIVATE_KEYS", "[not json")
    assert env_list("KEEPER_PRIVATE_KEYS", ["fallback"]) == ["fallback"]
