"""Level ladder model"""
from pydantic import BaseModel, ConfigDict


class Level(BaseModel):
    """One rung of the static level ladder"""
    model_config = ConfigDict(frozen=True)

    level: int
    name: str
    points_required: int
    badge: str
    perks: tuple[str, ...]
    color: str
