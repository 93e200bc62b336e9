"""
Merge Pipeline - consume a stream and merge it into a target as one unit
"""

from __future__ import annotations
import logging
from typing import Optional, TYPE_CHECKING

from streamtask.merge import MergeResult

if TYPE_CHECKING:
    from streamtask.cdc.view import ChangeView
    from streamtask.merge import MergeApplier

logger = logging.getLogger(__name__)


class MergePipeline:
    """
    One (stream, target) pipeline.

    The cursor advances only after the target transaction commits. If the
    process dies between the commit and the advance, the next run re-applies
    the same batch, which the applier tolerates.
    """

    def __init__(
        self,
        stream: str,
        view: "ChangeView",
        applier: "MergeApplier",
        target: str,
        max_batch_size: int = None,
    ):
        self._stream = stream
        self._view = view
        self._applier = applier
        self._target = target
        self._max_batch_size = max_batch_size

    def has_data(self) -> bool:
        return self._view.has_data(self._stream)

    def run(self, deadline: Optional[float] = None) -> MergeResult:
        """
        Consume the stream's pending changes and merge them.

        Raises:
            TransactionAbort: The merge rolled back; the cursor did not move
            ConcurrentCursorConflict: The merge committed but the cursor
                advance lost a race; the batch is re-applied next run
        """
        with self._view.batch(self._stream, self._max_batch_size) as batch:
            if batch.is_empty:
                logger.debug("Stream %s has no changes for %s", self._stream, self._target)
                return MergeResult()
            return self._applier.apply(self._target, batch, deadline=deadline)

    @property
    def stream(self) -> str:
        return self._stream

    @property
    def target(self) -> str:
        return self._target

    def __repr__(self) -> str:
        return f"<MergePipeline stream={self._stream} target={self._target}>"
