"""
Batch outcome derived from the states of its members.
"""

from collections import Counter
from dataclasses import dataclass
from typing import Sequence

from ddx.core.transfer import TransferSession, TransferState


@dataclass(frozen=True)
class BatchOutcome:
    """Overall state of a batch plus per-state counts"""

    is_terminal: bool
    overall_state: TransferState
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0


def aggregate(members: Sequence[TransferSession]) -> BatchOutcome:
    """
    Derive the batch state from its members

    The batch is terminal only when every member is. A terminal batch with
    any cancelled member is CANCELLED. Any other terminal batch is SUCCESS,
    even when some members ended in ERROR; those failures show up only in
    the per-file states and the `failed` count.

    Args:
        members: Sessions of the batch, in any order

    Returns:
        BatchOutcome for the current member states
    """
    counts = Counter(m.state for m in members)
    succeeded = counts[TransferState.SUCCESS]
    failed = counts[TransferState.ERROR]
    cancelled = counts[TransferState.CANCELLED]
    total = len(members)

    is_terminal = total > 0 and succeeded + failed + cancelled == total

    if not is_terminal:
        if total == 0:
            overall = TransferState.IDLE
        elif counts[TransferState.SELECTED] + counts[TransferState.IDLE] == total:
            overall = TransferState.SELECTED
        else:
            overall = TransferState.UPLOADING
    elif cancelled:
        overall = TransferState.CANCELLED
    else:
        # TODO: report partial failure separately once product decides on a distinct state
        overall = TransferState.SUCCESS

    return BatchOutcome(
        is_terminal=is_terminal,
        overall_state=overall,
        succeeded=succeeded,
        failed=failed,
        cancelled=cancelled,
        total=total,
    )
