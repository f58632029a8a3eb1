"""
Per-delegator stake ledger for a staking snapshot.
"""

import logging
from typing import Dict, List, TextIO, Tuple

import pandas as pd

from snapshot_errors import OutputSinkError, StakeOverflowError

logger = logging.getLogger(__name__)

# Unsigned 128-bit ceiling for any single delegator total
MAX_STAKE = 2 ** 128 - 1

LEDGER_COLUMNS = ["delegator", "amount"]


class SnapshotLedger:
    """
    Running total of stake keyed by delegator address.

    Accumulation order does not matter; export is always ascending by
    delegator address so identical chain state yields identical output.
    """

    def __init__(self):
        self._stakes: Dict[str, int] = {}

    def add(self, delegator: str, amount: int) -> int:
        """Add ``amount`` to ``delegator``'s total and return the new total."""
        if amount < 0:
            raise ValueError(f"Negative stake {amount} for delegator {delegator}")

        new_total = self._stakes.get(delegator, 0) + amount
        if new_total > MAX_STAKE:
            raise StakeOverflowError(
                f"Stake for delegator {delegator} overflows 128 bits "
                f"({self._stakes.get(delegator, 0)} + {amount})"
            )

        self._stakes[delegator] = new_total
        return new_total

    def get(self, delegator: str) -> int:
        return self._stakes.get(delegator, 0)

    def __len__(self) -> int:
        return len(self._stakes)

    def __contains__(self, delegator: str) -> bool:
        return delegator in self._stakes

    def export(self) -> List[Tuple[str, int]]:
        """Every delegator with non-zero stake, sorted by address."""
        return sorted((d, amt) for d, amt in self._stakes.items() if amt > 0)

    def to_dataframe(self) -> pd.DataFrame:
        """Exported entries as a DataFrame; amounts stay exact Python ints."""
        return pd.DataFrame(self.export(), columns=LEDGER_COLUMNS, dtype=object)

    def total_staked(self) -> int:
        return sum(self._stakes.values())

    def write_csv(self, handle: TextIO) -> int:
        """
        Write ``delegator,amount`` lines with no header.

        Returns the number of lines written.
        """
        df = self.to_dataframe()
        try:
            if not df.empty:
                df.to_csv(handle, header=False, index=False, lineterminator="\n")
            handle.flush()
        except OSError as e:
            raise OutputSinkError(f"Error writing snapshot output: {str(e)}") from e

        logger.debug(f"Wrote {len(df)} ledger entries")
        return len(df)
