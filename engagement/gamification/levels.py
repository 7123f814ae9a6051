"""
Level Ladder

Static, ordered ladder mapping cumulative points to a progression tier.
The ladder is loaded once and never changes at runtime; a user's level is
always the highest rung whose threshold is <= total points.

Ladder:
- 1 Newcomer (0)      - 6 Mentor (1500)
- 2 Explorer (100)    - 7 Guardian (2500)
- 3 Supporter (300)   - 8 Sage (4000)
- 4 Advocate (600)    - 9 Legend (6000)
- 5 Champion (1000)   - 10 Enlightened (10000)
"""

from typing import Optional, Sequence
import logging

from engagement.exceptions import InvalidInputError
from engagement.models.level import Level

logger = logging.getLogger(__name__)


DEFAULT_LEVELS: tuple[Level, ...] = (
    Level(level=1, name="Newcomer", points_required=0, badge="🌱",
          perks=("Daily check-ins", "Basic resources"), color="#10B981"),
    Level(level=2, name="Explorer", points_required=100, badge="🔍",
          perks=("Assessment tools", "Educational content"), color="#3B82F6"),
    Level(level=3, name="Supporter", points_required=300, badge="🤝",
          perks=("Peer support groups", "Buddy matching"), color="#8B5CF6"),
    Level(level=4, name="Advocate", points_required=600, badge="💪",
          perks=("Advanced resources", "Priority support"), color="#F59E0B"),
    Level(level=5, name="Champion", points_required=1000, badge="🏆",
          perks=("Leadership roles", "Exclusive rewards"), color="#EF4444"),
    Level(level=6, name="Mentor", points_required=1500, badge="👨‍🏫",
          perks=("Mentorship opportunities", "Special recognition"), color="#EC4899"),
    Level(level=7, name="Guardian", points_required=2500, badge="🛡️",
          perks=("Community moderation", "Expert status"), color="#6366F1"),
    Level(level=8, name="Sage", points_required=4000, badge="🧙‍♂️",
          perks=("Wisdom sharing", "Platform influence"), color="#8B5CF6"),
    Level(level=9, name="Legend", points_required=6000, badge="⭐",
          perks=("Legendary status", "All perks unlocked"), color="#F59E0B"),
    Level(level=10, name="Enlightened", points_required=10000, badge="✨",
          perks=("Enlightened one", "Ultimate recognition"), color="#10B981"),
)


class LevelLadder:
    """Read-only lookup over an ordered ladder"""

    def __init__(self, levels: Sequence[Level] = DEFAULT_LEVELS):
        ordered = tuple(sorted(levels, key=lambda l: l.points_required))
        if not ordered:
            raise ValueError("Level ladder cannot be empty")
        if ordered[0].points_required != 0:
            raise ValueError("Lowest level must require 0 points")
        self._levels = ordered
        self._by_number = {l.level: l for l in ordered}

    @property
    def levels(self) -> tuple[Level, ...]:
        return self._levels

    def level_for(self, total_points: int) -> Level:
        """
        Level for a point total

        Scans the ladder from the top and returns the first rung whose
        threshold is met.

        Raises:
            InvalidInputError: total_points is negative
        """
        if total_points < 0:
            raise InvalidInputError(
                "Points total cannot be negative", field="total_points", value=total_points
            )
        for level in reversed(self._levels):
            if total_points >= level.points_required:
                return level
        return self._levels[0]

    def get(self, level: int) -> Optional[Level]:
        """Level info by number"""
        return self._by_number.get(level)

    def next_level(self, level: int) -> Optional[Level]:
        """The rung after `level`, or None at the top"""
        return self._by_number.get(level + 1)

    def points_to_next_level(self, total_points: int) -> int:
        """Points still needed to reach the next rung (0 at the top)"""
        upcoming = self.next_level(self.level_for(total_points).level)
        if upcoming is None:
            return 0
        return upcoming.points_required - total_points


default_ladder = LevelLadder()


def level_for(total_points: int) -> Level:
    """Level for a point total on the default ladder"""
    return default_ladder.level_for(total_points)
