"""Unit tests for the level ladder (engagement/gamification/levels.py)"""
import pytest

from engagement.exceptions import InvalidInputError
from engagement.gamification.levels import DEFAULT_LEVELS, LevelLadder, default_ladder, level_for
from engagement.models.level import Level


# ============================================================================
# level_for
# ============================================================================

@pytest.mark.parametrize("points,expected", [
    (0, 1),
    (99, 1),
    (100, 2),
    (299, 2),
    (300, 3),
    (600, 4),
    (999, 4),
    (1000, 5),
    (1500, 6),
    (2500, 7),
    (4000, 8),
    (6000, 9),
    (9999, 9),
    (10000, 10),
    (250000, 10),
])
def test_level_for_thresholds(points, expected):
    """Highest rung whose threshold is <= points"""
    assert level_for(points).level == expected


def test_level_names_and_badges():
    assert default_ladder.get(1).name == "Newcomer"
    assert default_ladder.get(5).name == "Champion"
    assert default_ladder.get(10).name == "Enlightened"
    assert default_ladder.get(10).badge == "✨"


def test_negative_points_rejected():
    with pytest.raises(InvalidInputError):
        level_for(-1)


def test_level_for_is_monotonic():
    """Adding points never lowers the level"""
    previous = 1
    for points in range(0, 12000, 37):
        current = level_for(points).level
        assert current >= previous
        previous = current


# ============================================================================
# Navigation
# ============================================================================

def test_next_level_and_distance():
    assert default_ladder.next_level(1).level == 2
    assert default_ladder.next_level(10) is None
    assert default_ladder.points_to_next_level(0) == 100
    assert default_ladder.points_to_next_level(250) == 50
    assert default_ladder.points_to_next_level(10000) == 0


def test_unknown_level_returns_none():
    assert default_ladder.get(11) is None


def test_levels_are_ordered_by_threshold():
    thresholds = [l.points_required for l in default_ladder.levels]
    assert thresholds == sorted(thresholds)
    assert len(DEFAULT_LEVELS) == 10


def test_custom_ladder_requires_zero_floor():
    with pytest.raises(ValueError):
        LevelLadder([Level(level=1, name="A", points_required=10, badge="a", perks=(), color="#000")])


def test_custom_ladder_sorts_input():
    ladder = LevelLadder([
        Level(level=2, name="B", points_required=50, badge="b", perks=(), color="#111"),
        Level(level=1, name="A", points_required=0, badge="a", perks=(), color="#000"),
    ])
    assert ladder.level_for(60).name == "B"
    assert ladder.level_for(49).name == "A"
