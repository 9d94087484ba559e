"""
Retention tier selection

The storage layer expires objects by prefix (daily/, weekly/, monthly/),
so choosing a tier is all the retention logic this tool owns.

Copyright 2025 HyperSec

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

from datetime import date
from enum import Enum
from typing import Union

AUTO = "auto"

SUNDAY = 6


class RetentionTier(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    def __str__(self) -> str:
        return self.value


TIER_CHOICES = [AUTO] + [t.value for t in RetentionTier]


def select_tier(today: date) -> RetentionTier:
    """
    Pick the retention tier for a run date.

    The first of the month is monthly even when it falls on a Sunday.
    Accepts a date or a datetime; only the calendar day is used.
    """
    if today.day == 1:
        return RetentionTier.MONTHLY
    if today.weekday() == SUNDAY:
        return RetentionTier.WEEKLY
    return RetentionTier.DAILY


def resolve_tier(option: Union[str, RetentionTier], today: date) -> RetentionTier:
    """Resolve a configured tier name ('auto' or an explicit tier)"""
    if isinstance(option, RetentionTier):
        return option

    value = (option or AUTO).strip().lower()
    if value == AUTO:
        return select_tier(today)

    try:
        return RetentionTier(value)
    except ValueError:
        raise ValueError(
            f"Invalid tier '{option}'. Use one of: {', '.join(TIER_CHOICES)}"
        ) from None
