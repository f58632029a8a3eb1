"""
Native staker snapshot

Walks every non-jailed validator of a Cosmos SDK chain, crawls each
validator's delegations page by page, and folds the stake into one
per-delegator ledger.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional

from pagination import DEFAULT_PAGE_LIMIT, PageRequest, paginate
from snapshot_errors import DataContractError
from snapshot_ledger import MAX_STAKE, SnapshotLedger
from staking_client import Delegation, StakingQueryClient

logger = logging.getLogger(__name__)

AMOUNT_PATTERN = re.compile(r"[0-9]+")

# Decimal digits in MAX_STAKE
MAX_AMOUNT_DIGITS = len(str(MAX_STAKE))


@dataclass(frozen=True)
class SnapshotProgress:
    """Reported once per completed validator."""

    processed: int
    total: int
    validator: str
    delegators_indexed: int

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 100.0
        return self.processed * 100.0 / self.total


ProgressCallback = Callable[[SnapshotProgress], None]


def parse_amount(delegation: Delegation, validator_addr: str) -> int:
    """Stake carried by one delegation record."""
    balance = delegation.balance
    if balance is None or balance.amount is None:
        raise DataContractError(
            f"Delegation from {delegation.delegator_address} to {validator_addr} has no balance"
        )

    raw = balance.amount
    if not isinstance(raw, str) or not AMOUNT_PATTERN.fullmatch(raw):
        raise DataContractError(
            f"Invalid amount {raw!r} for delegation from {delegation.delegator_address} to {validator_addr}"
        )
    # Length check first: int() refuses very long digit strings with ValueError
    digits = raw.lstrip("0") or "0"
    if len(digits) > MAX_AMOUNT_DIGITS or int(digits) > MAX_STAKE:
        raise DataContractError(
            f"Amount of {len(digits)} digits for delegation from {delegation.delegator_address} "
            f"to {validator_addr} does not fit in 128 bits"
        )
    return int(digits)


class NativeStakerSnapshot:
    """
    Snapshot of x/staking delegators.

    Validators are processed one at a time unless ``concurrency`` is raised,
    in which case up to that many delegation crawls run at once. Ledger writes
    are serialized either way, so the result does not depend on ordering.
    """

    def __init__(self, client: StakingQueryClient, page_limit: int = DEFAULT_PAGE_LIMIT,
                 concurrency: int = 1, on_progress: Optional[ProgressCallback] = None):
        if concurrency < 1:
            raise ValueError(f"Concurrency must be at least 1, got {concurrency}")
        self.client = client
        self.page_limit = page_limit
        self.concurrency = concurrency
        self.on_progress = on_progress

        self._ledger_lock = asyncio.Lock()
        self._processed = 0
        self._total = 0

    async def get_all_validators(self, status: str = "") -> List[str]:
        """
        Operator addresses of all non-jailed validators with the given status.

        Any failed page aborts the whole enumeration.
        """
        validators: List[str] = []
        jailed = 0

        async def fetch(page: PageRequest):
            return await self.client.list_validators(status, page)

        async for response in paginate(fetch, self.page_limit):
            for validator in response.validators:
                if validator.jailed:
                    jailed += 1
                    continue
                validators.append(validator.operator_address)

        logger.info(f"Found {len(validators)} eligible validators ({jailed} jailed skipped)"
                    + (f" with status {status}" if status else ""))
        return validators

    async def aggregate_validator_delegations(self, validator_addr: str, ledger: SnapshotLedger) -> int:
        """
        Add every delegation made to ``validator_addr`` into ``ledger``.

        Returns the number of delegation records applied.
        """
        records = 0

        async def fetch(page: PageRequest):
            return await self.client.list_delegations(validator_addr, page)

        async for response in paginate(fetch, self.page_limit):
            amounts = [(d.delegator_address, parse_amount(d, validator_addr)) for d in response.delegations]

            async with self._ledger_lock:
                for delegator, amount in amounts:
                    ledger.add(delegator, amount)
            records += len(amounts)

        logger.debug(f"Applied {records} delegations for validator {validator_addr}")

        self._processed += 1
        self._report(SnapshotProgress(
            processed=self._processed,
            total=self._total,
            validator=validator_addr,
            delegators_indexed=len(ledger),
        ))
        return records

    def _report(self, progress: SnapshotProgress):
        logger.info(f"[{progress.percent:.1f}%] Processed delegations to validator {progress.validator}, "
                    f"{progress.delegators_indexed} delegators indexed")
        if self.on_progress is not None:
            self.on_progress(progress)

    async def run(self, status: str = "") -> SnapshotLedger:
        """Crawl all eligible validators and return the completed ledger."""
        ledger = SnapshotLedger()
        validators = await self.get_all_validators(status)

        self._processed = 0
        self._total = len(validators)
        if not validators:
            logger.warning("No eligible validators found, snapshot is empty")
            return ledger

        if self.concurrency == 1:
            for validator in validators:
                await self.aggregate_validator_delegations(validator, ledger)
        else:
            await self._aggregate_concurrently(validators, ledger)

        logger.info(f"Indexed {len(ledger)} delegators across {len(validators)} validators")
        return ledger

    async def _aggregate_concurrently(self, validators: List[str], ledger: SnapshotLedger):
        semaphore = asyncio.Semaphore(self.concurrency)

        async def process(validator: str):
            async with semaphore:
                await self.aggregate_validator_delegations(validator, ledger)

        tasks = [asyncio.ensure_future(process(v)) for v in validators]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
