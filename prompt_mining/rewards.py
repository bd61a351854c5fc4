"""Pluggable reward calculation used when a request does not name a reward."""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional, Protocol, Sequence

from web3 import Web3

from .config import DEFAULT_REWARD_SCHEDULE, RewardConfig
from .hashing import RewardAmount


class RewardCalculator(Protocol):
    def __call__(self, content: str, beneficiary: str) -> RewardAmount: ...


class ScheduleRewardCalculator:
    """Rewards from a fixed schedule of ether-denominated amounts.

    Returns the first tier in single-reward mode, or the whole schedule (in
    wei) when multi-rewards are enabled.
    """

    def __init__(self, schedule: Optional[Sequence[str]] = None, *, multi: bool = False) -> None:
        values = list(schedule or DEFAULT_REWARD_SCHEDULE)
        self._schedule: List[int] = [int(Web3.to_wei(Decimal(str(value)), "ether")) for value in values]
        self._multi = multi

    @classmethod
    def from_config(cls, config: RewardConfig) -> "ScheduleRewardCalculator":
        return cls(config.schedule, multi=config.use_multi_rewards)

    @property
    def schedule(self) -> List[int]:
        return list(self._schedule)

    def __call__(self, content: str, beneficiary: str) -> RewardAmount:
        if self._multi:
            return list(self._schedule)
        return self._schedule[0]


__all__ = ["RewardCalculator", "ScheduleRewardCalculator"]
