"""
Reward Catalog & Redemption

Reward definitions plus the redemption lifecycle:
1. redeem: availability, eligibility and balance checks, then one spend
   and (for limited rewards) one stock unit, then a signed token
2. validate: read-only check of a token payload
3. complete: marks a valid token redeemed, exactly once

Token payloads are base64url(JSON) + "." + HMAC-SHA256 signature, so a
payload cannot be forged or altered without the signing secret.
"""

import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional, Union
import logging

from pydantic import TypeAdapter

from engagement.config import REDEMPTION_TOKEN_TTL_DAYS, TOKEN_SIGNING_SECRET
from engagement.db.base import Storage, UserSession
from engagement.exceptions import (
    AccountNotFoundError,
    IneligibleForRewardError,
    InsufficientBalanceError,
    InvalidInputError,
    RewardUnavailableError,
    TokenInvalidError,
)
from engagement.gamification.ledger import Ledger
from engagement.models.events import EngagementEvent, EventType
from engagement.models.ledger import TransactionCategory, TransactionDirection, UserAccount
from engagement.models.reward import (
    RedemptionToken,
    Reward,
    RewardAvailability,
    RewardCategory,
    RewardRequirements,
    TokenValidation,
)
from engagement.utils.datetime_helpers import Clock, now_utc
from engagement.utils.ids import new_redemption_id

logger = logging.getLogger(__name__)

REWARD_SOURCE = "reward-system"

REASON_BAD_FORMAT = "Invalid redemption code format"
REASON_UNKNOWN = "Invalid redemption code"
REASON_EXPIRED = "This redemption code has expired"
REASON_REDEEMED = "This reward has already been redeemed"
REASON_VALID = "Valid redemption code"


DEFAULT_REWARDS: tuple[Reward, ...] = (
    Reward(
        id="wellness-tea",
        name="Wellness Tea Package",
        description="Calming herbal tea blend for relaxation",
        category=RewardCategory.WELLNESS,
        point_cost=200,
        icon="🍵",
    ),
    Reward(
        id="meditation-app",
        name="Premium Meditation App (1 Month)",
        description="Access to premium meditation content",
        category=RewardCategory.DIGITAL,
        point_cost=500,
        icon="🧘‍♀️",
    ),
    Reward(
        id="wellness-journal",
        name="Wellness Journal",
        description="Beautiful journal for mindfulness practice",
        category=RewardCategory.PHYSICAL,
        point_cost=300,
        icon="📔",
        availability=RewardAvailability.LIMITED,
        stock=50,
    ),
    Reward(
        id="counseling-session",
        name="Free Counseling Session",
        description="One-on-one session with certified counselor",
        category=RewardCategory.WELLNESS,
        point_cost=1000,
        icon="👨‍⚕️",
        availability=RewardAvailability.LIMITED,
        stock=10,
        requirements=RewardRequirements(min_level=3),
    ),
    Reward(
        id="fitness-tracker",
        name="Fitness & Wellness Tracker",
        description="Smart device to monitor health metrics",
        category=RewardCategory.PHYSICAL,
        point_cost=2000,
        icon="⌚",
        availability=RewardAvailability.LIMITED,
        stock=5,
        requirements=RewardRequirements(min_level=5),
    ),
)


def load_catalog(path: Union[str, Path]) -> tuple[Reward, ...]:
    """
    Load reward definitions from a JSON list

    Raises:
        pydantic.ValidationError: An entry does not describe a valid reward
    """
    raw = Path(path).read_text(encoding="utf-8")
    rewards = TypeAdapter(list[Reward]).validate_json(raw)
    logger.info(f"Loaded {len(rewards)} rewards from {path}")
    return tuple(rewards)


class RewardCatalog:
    """Static reward definitions, keyed by id"""

    def __init__(self, rewards: Iterable[Reward] = DEFAULT_REWARDS):
        self._rewards: dict[str, Reward] = {}
        for reward in rewards:
            if reward.id in self._rewards:
                raise ValueError(f"Duplicate reward id '{reward.id}'")
            if reward.is_limited and reward.stock is None:
                raise ValueError(f"Limited reward '{reward.id}' needs an initial stock")
            self._rewards[reward.id] = reward

    def get(self, reward_id: str) -> Optional[Reward]:
        return self._rewards.get(reward_id)

    def all(self) -> list[Reward]:
        return list(self._rewards.values())

    def limited(self) -> list[Reward]:
        return [r for r in self._rewards.values() if r.is_limited]


def missing_requirements(account: UserAccount, reward: Reward) -> list[str]:
    """Requirements the account does not meet, as readable strings"""
    missing = []
    req = reward.requirements
    if req.min_level is not None and account.level < req.min_level:
        missing.append(f"level {req.min_level}")
    unlocked = account.achievement_ids
    for achievement_id in req.required_achievements:
        if achievement_id not in unlocked:
            missing.append(f"achievement {achievement_id}")
    return missing


def unavailable_reason(reward: Reward, now: datetime) -> Optional[str]:
    """Why a reward cannot be redeemed right now, ignoring stock"""
    if not reward.is_active:
        return "inactive"
    if reward.available_from is not None and now < reward.available_from:
        return "not yet available"
    if reward.available_until is not None and now > reward.available_until:
        return "no longer available"
    return None


class TokenCodec:
    """Signs and verifies redemption token payloads"""

    def __init__(self, secret: str = TOKEN_SIGNING_SECRET):
        self._secret = secret.encode("utf-8")

    def _sign(self, body: bytes) -> str:
        digest = hmac.new(self._secret, body, hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    def encode(self, token_id: str, user_id: str, reward_id: str, generated_at: datetime) -> str:
        data = {
            "redemption_id": token_id,
            "user_id": user_id,
            "reward_id": reward_id,
            "timestamp": generated_at.isoformat(),
        }
        body = base64.urlsafe_b64encode(json.dumps(data, separators=(",", ":")).encode("utf-8"))
        body = body.rstrip(b"=")
        return f"{body.decode('ascii')}.{self._sign(body)}"

    def decode(self, payload: str) -> dict:
        """
        Verify and decode a payload

        Raises:
            TokenInvalidError: Malformed payload or bad signature
        """
        if not isinstance(payload, str) or payload.count(".") != 1:
            raise TokenInvalidError(REASON_BAD_FORMAT)

        body, signature = payload.split(".")
        try:
            padded = body + "=" * (-len(body) % 4)
            data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        except (binascii.Error, UnicodeError, ValueError):
            raise TokenInvalidError(REASON_BAD_FORMAT)
        if not isinstance(data, dict) or "redemption_id" not in data:
            raise TokenInvalidError(REASON_BAD_FORMAT)

        expected = self._sign(body.encode("ascii")).encode("ascii")
        if not hmac.compare_digest(signature.encode("utf-8", "replace"), expected):
            raise TokenInvalidError(REASON_UNKNOWN, token_id=data.get("redemption_id"))
        return data


class RedemptionService:
    """Redeems rewards for points and manages the resulting tokens"""

    def __init__(
        self,
        storage: Storage,
        ledger: Ledger,
        catalog: Optional[RewardCatalog] = None,
        clock: Clock = now_utc,
        codec: Optional[TokenCodec] = None,
        token_ttl_days: int = REDEMPTION_TOKEN_TTL_DAYS,
    ):
        self.storage = storage
        self.ledger = ledger
        self.catalog = catalog or RewardCatalog()
        self.clock = clock
        self.codec = codec or TokenCodec()
        self.token_ttl = timedelta(days=token_ttl_days)

    async def seed_stock(self) -> None:
        """Create stock records for limited rewards that have none yet"""
        for reward in self.catalog.limited():
            await self.storage.seed_stock(reward.id, reward.stock)

    async def is_in_stock(self, reward: Reward) -> bool:
        if not reward.is_limited:
            return True
        stock = await self.storage.get_stock(reward.id)
        return stock is not None and stock > 0

    async def list_eligible(self, account: UserAccount) -> list[Reward]:
        """Rewards the account could redeem now, ignoring its balance"""
        now = self.clock()
        eligible = []
        for reward in self.catalog.all():
            if unavailable_reason(reward, now) is not None:
                continue
            if missing_requirements(account, reward):
                continue
            if not await self.is_in_stock(reward):
                continue
            eligible.append(reward)
        return eligible

    async def redeem(
        self,
        session: UserSession,
        reward_id: str,
        idempotency_key: Optional[str] = None,
    ) -> RedemptionToken:
        """
        Exchange points for a reward

        All-or-nothing inside the session: a failure after the stock unit
        is reserved rolls the reservation back with the session.

        Returns:
            Newly minted token (or the original one on idempotent replay)

        Raises:
            RewardUnavailableError: Unknown, inactive, out of season or out of stock
            AccountNotFoundError: No account for the user
            IneligibleForRewardError: Level or achievement requirement unmet
            InsufficientBalanceError: Not enough available points
        """
        if idempotency_key:
            existing = await session.find_token(idempotency_key)
            if existing is not None:
                if existing.reward_id != reward_id:
                    raise InvalidInputError(
                        f"Idempotency key '{idempotency_key}' was already used for reward {existing.reward_id}",
                        field="idempotency_key",
                        value=idempotency_key,
                    )
                logger.debug(f"Idempotent replay of redemption {existing.id} for user {session.user_id}")
                return existing

        now = self.clock()
        reward = self.catalog.get(reward_id)
        if reward is None:
            raise RewardUnavailableError(reward_id, "unknown reward", user_id=session.user_id)
        reason = unavailable_reason(reward, now)
        if reason is not None:
            raise RewardUnavailableError(reward_id, reason, user_id=session.user_id)
        if not await self.is_in_stock(reward):
            raise RewardUnavailableError(reward_id, "out of stock", user_id=session.user_id)

        account = await session.get_account()
        if account is None:
            raise AccountNotFoundError(session.user_id, operation="redeem_reward")

        missing = missing_requirements(account, reward)
        if missing:
            raise IneligibleForRewardError(session.user_id, reward_id, missing)

        if account.available_points < reward.point_cost:
            raise InsufficientBalanceError(
                session.user_id,
                required=reward.point_cost,
                available=account.available_points,
                operation="redeem_reward",
            )

        # Atomic decrement-if-positive; another user may have taken the last unit
        if reward.is_limited and not await session.reserve_stock(reward_id):
            raise RewardUnavailableError(reward_id, "out of stock", user_id=session.user_id)

        spend = await self.ledger.post_transaction(
            session,
            TransactionDirection.SPEND,
            TransactionCategory.REDEMPTION,
            reward.point_cost,
            f"Redeemed: {reward.name}",
            REWARD_SOURCE,
            metadata={"reward_id": reward.id},
        )

        token_id = new_redemption_id()
        token = RedemptionToken(
            id=token_id,
            user_id=session.user_id,
            reward_id=reward.id,
            payload=self.codec.encode(token_id, session.user_id, reward.id, now),
            transaction_id=spend.id,
            generated_at=now,
            expires_at=now + self.token_ttl,
            idempotency_key=idempotency_key,
        )
        await session.save_token(token)

        session.events.append(EngagementEvent(
            event_type=EventType.REWARD_REDEEMED,
            user_id=session.user_id,
            occurred_at=now,
            data={
                "reward_id": reward.id,
                "reward_name": reward.name,
                "point_cost": reward.point_cost,
                "token_id": token.id,
                "transaction_id": spend.id,
                "expires_at": token.expires_at.isoformat(),
            },
        ))

        logger.info(f"User {session.user_id} redeemed {reward.id} for {reward.point_cost} points (token {token.id})")
        return token

    def check_token(self, token: Optional[RedemptionToken], token_id: Optional[str] = None) -> RedemptionToken:
        """
        Raise if a token cannot be used: unknown, then expired, then redeemed

        Raises:
            TokenInvalidError: With the matching reason string
        """
        if token is None:
            raise TokenInvalidError(REASON_UNKNOWN, token_id=token_id)
        if self.clock() > token.expires_at:
            raise TokenInvalidError(REASON_EXPIRED, token_id=token.id)
        if token.is_redeemed:
            raise TokenInvalidError(REASON_REDEEMED, token_id=token.id)
        return token

    async def validate(self, payload: str) -> TokenValidation:
        """Check a token payload without changing anything"""
        try:
            data = self.codec.decode(payload)
            token = await self.storage.get_token(data["redemption_id"])
            if token is not None and token.payload != payload:
                token = None
            token = self.check_token(token, data["redemption_id"])
        except TokenInvalidError as e:
            return TokenValidation(valid=False, reason=e.reason)
        return TokenValidation(valid=True, reason=REASON_VALID, token=token)

    async def complete(self, session: UserSession, token_id: str, location: Optional[str] = None) -> bool:
        """
        Mark a token redeemed

        Returns:
            True on the first successful completion, False otherwise
        """
        try:
            token = self.check_token(await session.get_token(token_id), token_id)
        except TokenInvalidError as e:
            logger.info(f"Completion of token {token_id} refused: {e.reason}")
            return False

        now = self.clock()
        token.is_redeemed = True
        token.redeemed_at = now
        token.redemption_location = location
        await session.save_token(token)

        session.events.append(EngagementEvent(
            event_type=EventType.REDEMPTION_COMPLETED,
            user_id=session.user_id,
            occurred_at=now,
            data={"token_id": token.id, "reward_id": token.reward_id, "location": location},
        ))
        logger.info(f"Token {token.id} redeemed for user {session.user_id}")
        return True

    async def cleanup_expired(self, session: UserSession, retention: timedelta) -> int:
        """
        Delete the user's unredeemed tokens expired longer than `retention` ago

        Returns:
            Number of tokens deleted
        """
        cutoff = self.clock() - retention
        removed = 0
        for token in await session.get_tokens():
            if not token.is_redeemed and token.expires_at < cutoff:
                await session.delete_token(token.id)
                removed += 1
        if removed:
            logger.info(f"Deleted {removed} expired token(s) for user {session.user_id}")
        return removed
