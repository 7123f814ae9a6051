"""Import checks for the engagement package and its public entry points"""
import importlib

import pytest


@pytest.mark.parametrize("module_name", [
    "engagement.config",
    "engagement.exceptions",
    "engagement.gamification",
    "engagement.gamification.rewards",
    "engagement.services",
    "engagement.observability",
    "engagement.scheduler.maintenance",
    "engagement.db.memory",
    "engagement.db.postgres",
    "engagement.main",
])
def test_module_imports(module_name):
    assert importlib.import_module(module_name) is not None


def test_gamification_exports():
    gamification = importlib.import_module("engagement.gamification")
    for name in gamification.__all__:
        assert hasattr(gamification, name)


def test_catalog_all_returns_every_reward():
    from engagement.gamification.rewards import DEFAULT_REWARDS, RewardCatalog

    catalog = RewardCatalog()
    assert [r.id for r in catalog.all()] == [r.id for r in DEFAULT_REWARDS]
    assert all(r.is_limited for r in catalog.limited())
