"""Classify-then-move loop for AI triage."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING

from butler.engine.mover import MoveEngine
from butler.mail.errors import MailStoreError, MoveError
from butler.mail.store import MailStore
from butler.mail.types import FolderRef, MessageRecord
from butler.triage.types import TriageDecision, TriageItemResult, TriageResult

if TYPE_CHECKING:
    from butler.triage.classifier import Classifier

logger = logging.getLogger(__name__)

ClassifyStep = Callable[[MessageRecord], Awaitable[TriageDecision]]
DestinationResolver = Callable[[str], Awaitable[FolderRef]]
#: (index, total, item, moved_so_far, last_result); index is 1-based.
ProgressCallback = Callable[[int, int, MessageRecord, int, TriageItemResult], None]


class CancellationToken:
    """Monotonic abort flag shared between the pipeline and whoever stops it."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        if not self._cancelled:
            logger.info("Triage cancellation requested — stopping after the current item")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class TriagePipeline:
    """Runs each item through classify → resolve destination → move.

    Items are handled strictly one at a time in the order given.  A failure
    on one item (classifier, folder resolution or move) is recorded on that
    item's result and the loop carries on.  Cancellation is only observed
    between items, so no item is ever left half-processed.

    Usage::

        pipeline = TriagePipeline(MoveEngine(store))
        result = await pipeline.run(
            records,
            build_classify_step(store, classifier, "newsletters I never read"),
            FolderResolver(store).find_or_create,
            max_iterations=50,
        )
    """

    def __init__(self, mover: MoveEngine) -> None:
        self._mover = mover

    async def run(
        self,
        items: Sequence[MessageRecord],
        classify: ClassifyStep,
        destination_resolver: DestinationResolver,
        max_iterations: int | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> TriageResult:
        limit = len(items) if max_iterations is None else max(0, min(len(items), max_iterations))
        # label -> resolved folder, or the error message from the one attempt
        destinations: dict[str, FolderRef | str] = {}
        result = TriageResult()

        for index, item in enumerate(items[:limit], start=1):
            if cancel_token is not None and cancel_token.cancelled:
                result.aborted = True
                logger.info("Triage aborted after %d of %d item(s)", result.processed, limit)
                break

            item_result = await self._process(item, classify, destination_resolver, destinations)
            result.results.append(item_result)
            result.processed += 1
            if item_result.moved:
                result.moved += 1
            if item_result.auth_failure:
                result.auth_required = True
            if item_result.match and item_result.folder:
                result.distribution[item_result.folder] = (
                    result.distribution.get(item_result.folder, 0) + 1
                )

            if on_progress is not None:
                try:
                    on_progress(index, limit, item, result.moved, item_result)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Progress callback failed on item %s: %s", item.id, exc)

        logger.info(
            "Triage finished: processed=%d moved=%d errors=%d aborted=%s",
            result.processed,
            result.moved,
            result.errors,
            result.aborted,
        )
        return result

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _process(
        self,
        item: MessageRecord,
        classify: ClassifyStep,
        resolve: DestinationResolver,
        destinations: dict[str, FolderRef | str],
    ) -> TriageItemResult:
        base = dict(id=item.id, subject=item.subject, sender=item.sender)

        try:
            decision = await classify(item)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Classifier raised on item %s: %s", item.id, exc)
            decision = TriageDecision(match=False, error=f"Classification failed: {exc}")

        if decision.error:
            return TriageItemResult(**base, error=decision.error)
        if not decision.match:
            return TriageItemResult(**base, reasoning=decision.rationale)
        if not decision.folder:
            return TriageItemResult(
                **base, match=True, reasoning=decision.rationale,
                error="Classifier matched without naming a folder",
            )

        label = decision.folder
        destination = await self._destination(label, resolve, destinations)
        if isinstance(destination, str):
            return TriageItemResult(
                **base, match=True, folder=label, reasoning=decision.rationale, error=destination
            )

        try:
            await self._mover.move_record(item, destination)
        except MoveError as exc:
            logger.warning("Triage move failed for item %s: %s", item.id, exc)
            return TriageItemResult(
                **base, match=True, folder=label, reasoning=decision.rationale,
                error=str(exc), auth_failure=exc.auth_failure,
            )
        return TriageItemResult(
            **base, match=True, folder=label, reasoning=decision.rationale, moved=True
        )

    @staticmethod
    async def _destination(
        label: str,
        resolve: DestinationResolver,
        destinations: dict[str, FolderRef | str],
    ) -> FolderRef | str:
        """Resolve ``label`` once per run; later items reuse the outcome, failures included."""
        if label in destinations:
            return destinations[label]
        try:
            outcome: FolderRef | str = await resolve(label)
        except MailStoreError as exc:
            logger.warning("Could not resolve triage folder %r: %s", label, exc)
            outcome = f'Could not resolve folder "{label}": {exc}'
        destinations[label] = outcome
        return outcome


def build_classify_step(store: MailStore, classifier: Classifier, criteria: str) -> ClassifyStep:
    """Adapt a Classifier into the pipeline's ``classify`` callable.

    The full body is fetched first; if that fails the classifier still runs
    on the preview text.
    """

    async def classify(item: MessageRecord) -> TriageDecision:
        try:
            body = await store.get_full_body(item.id)
        except MailStoreError as exc:
            logger.debug("Body fetch failed for item %s: %s", item.id, exc)
            body = ""
        classification = await classifier.classify(item, criteria, body=body)
        return TriageDecision.from_classification(classification)

    return classify
