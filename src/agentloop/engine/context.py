"""Context window manager: keeps history within the provider's budget.

The budget invariant is ``history_tokens + reserved_output_tokens <=
max_tokens``, where ``history_tokens`` is the sum of the cached
per-message costs stamped at append time.

``ensure_within_budget`` is a no-op while the invariant holds. Otherwise
it applies, in order of increasing destructiveness:

1. **Compaction** -- contiguous runs of low-value messages outside the
   preserved window are replaced by a single summary message.
2. **Dehydration** -- large tool outputs are truncated to a stub, then
   whole exchanges are dropped oldest first. The newest unit is never
   dropped and an assistant tool-call message is never separated from
   its results. When the newest unit alone is still too large, its tool
   outputs are cut to a bare marker, then its narration is removed, and
   finally the exchange is collapsed into a summary sized to fit.

If neither restores the invariant, ContextOverflowError names the
largest remaining message.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from agentloop.classify import classify_error
from agentloop.engine.summarizers import DigestSummarizer
from agentloop.exceptions import ContextOverflowError
from agentloop.models.messages import Message, MessageKind, Role, TextBlock, ToolResultBlock
from agentloop.models.results import CompactionAction, CompactionOutcome, ContextUsage

if TYPE_CHECKING:
    from agentloop.models.config import CompactionPolicy, ContextBudget
    from agentloop.models.session import Session
    from agentloop.protocols import Summarizer, TokenEstimator

logger = logging.getLogger(__name__)

_CHARS_PER_TOKEN = 4

SUMMARY_HEADER = "[Summary of {count} earlier messages]"
DROPPED_MARKER = "[output dropped]"


@dataclass(frozen=True)
class _Unit:
    """A slice of history that is kept or removed as a whole.

    Either an assistant message carrying tool calls together with the
    tool messages answering it, or a single message.
    """

    start: int
    end: int
    exchange: bool = False

    def messages(self, history: list[Message]) -> list[Message]:
        return history[self.start : self.end]


def group_units(history: list[Message]) -> list[_Unit]:
    """Split history into units, pairing tool calls with their results."""
    units: list[_Unit] = []
    i = 0
    while i < len(history):
        message = history[i]
        if message.role == Role.ASSISTANT and message.tool_calls:
            open_ids = message.call_ids
            j = i + 1
            while j < len(history) and history[j].role == Role.TOOL and history[j].call_ids <= open_ids:
                j += 1
            units.append(_Unit(i, j, exchange=True))
            i = j
        else:
            units.append(_Unit(i, i + 1))
            i += 1
    return units


class ContextWindowManager:
    """Enforces the context budget on a Session's history.

    Args:
        budget: Provider context window.
        policy: Selection policy for compaction and dehydration.
        estimator: Token estimator used for synthesized messages.
        summarizer: Summarizer used for compaction. Defaults to
            DigestSummarizer. Failures fall back to the digest.
    """

    def __init__(
        self,
        budget: ContextBudget,
        policy: CompactionPolicy,
        estimator: TokenEstimator,
        summarizer: Summarizer | None = None,
    ) -> None:
        self._budget = budget
        self._policy = policy
        self._estimator = estimator
        self._summarizer: Summarizer = summarizer or DigestSummarizer()
        self._digest = DigestSummarizer()

    @property
    def budget(self) -> ContextBudget:
        return self._budget

    @property
    def policy(self) -> CompactionPolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def usage(self, session: Session) -> ContextUsage:
        """Report current context utilization."""
        used = session.history_tokens
        reserved = self._budget.reserved_output_tokens
        ratio = (used + reserved) / self._budget.max_tokens
        return ContextUsage(
            used=used,
            reserved=reserved,
            max_tokens=self._budget.max_tokens,
            should_compact=ratio >= self._policy.warn_threshold,
        )

    def ensure_within_budget(self, session: Session) -> CompactionOutcome:
        """Restore the budget invariant on *session*.

        Returns:
            CompactionOutcome describing the most destructive action taken.

        Raises:
            ContextOverflowError: If the invariant cannot be restored.
        """
        before = session.history_tokens
        if self._budget.holds(before):
            return CompactionOutcome(CompactionAction.NOOP, before, before)

        logger.debug(
            "History over budget: %d + %d > %d",
            before,
            self._budget.reserved_output_tokens,
            self._budget.max_tokens,
        )
        compacted = self.compact(session)
        if self._budget.holds(session.history_tokens):
            return CompactionOutcome(
                CompactionAction.COMPACTED,
                before,
                session.history_tokens,
                messages_removed=compacted.messages_removed,
                summary_index=compacted.summary_index,
            )

        dehydrated = self.dehydrate(session)
        after = session.history_tokens
        if not self._budget.holds(after):
            index, tokens = self._largest_message(session)
            if tokens <= self._budget.history_budget:
                # No lone message is too large; report the newest unit.
                unit = group_units(session.messages)[-1]
                index = unit.start
                tokens = sum(m.token_cost for m in unit.messages(session.messages))
            raise ContextOverflowError(index, tokens, self._budget.history_budget)

        logger.warning(
            "Dehydrated history: %d -> %d tokens (%d removed, %d truncated)",
            before,
            after,
            compacted.messages_removed + dehydrated.messages_removed,
            dehydrated.messages_truncated,
        )
        return CompactionOutcome(
            CompactionAction.DEHYDRATED,
            before,
            after,
            messages_removed=compacted.messages_removed + dehydrated.messages_removed,
            messages_truncated=dehydrated.messages_truncated,
            summary_index=compacted.summary_index,
        )

    def compact(self, session: Session) -> CompactionOutcome:
        """Summarize low-value runs outside the preserved window.

        Runs are processed oldest first and compaction stops as soon as
        the invariant holds. A run is left alone when its summary would
        not be smaller than the run itself.
        """
        before = session.history_tokens
        removed = 0
        summary_index: int | None = None
        offset = 0

        for start, end in self._low_value_runs(session.messages):
            if self._budget.holds(session.history_tokens):
                break
            start -= offset
            end -= offset
            run = session.messages[start:end]
            run_cost = sum(m.token_cost for m in run)
            summary = self._summarize(run)
            if summary.token_cost >= run_cost:
                logger.debug("Skipping run [%d, %d): summary not smaller", start, end)
                continue
            session.replace_range(start, end, [summary])
            offset += (end - start) - 1
            removed += len(run)
            summary_index = start
            logger.debug(
                "Compacted %d messages at %d: %d -> %d tokens",
                len(run),
                start,
                run_cost,
                summary.token_cost,
            )

        action = CompactionAction.COMPACTED if removed else CompactionAction.NOOP
        return CompactionOutcome(
            action,
            before,
            session.history_tokens,
            messages_removed=removed,
            summary_index=summary_index,
        )

    def dehydrate(self, session: Session) -> CompactionOutcome:
        """Truncate and drop history until the invariant holds.

        Each step runs only while the budget is still violated:

        a. truncate tool outputs outside the preserved window;
        b. truncate tool outputs inside it, sparing the newest unit;
        c. drop unpinned units, outside the window then inside it;
        d. drop pinned units, the system prompt last;
        e. shrink the newest unit: stub, then blank, its tool outputs
           and drop narration beside its tool calls;
        f. collapse the newest exchange into a summary that fits.
        """
        before = session.history_tokens
        truncated = 0
        removed = 0

        def violated() -> bool:
            return not self._budget.holds(session.history_tokens)

        window = self._window_start(session.messages)
        last = group_units(session.messages)[-1].start if session.messages else 0

        truncated += self._truncate_tool_outputs(session, 0, window, violated)
        if violated():
            truncated += self._truncate_tool_outputs(session, window, last, violated)

        if violated():
            removed += self._drop_units(session, lambda m: not m.pinned, violated)
        if violated():
            removed += self._drop_units(
                session,
                lambda m: m.pinned and m.role != Role.SYSTEM,
                violated,
            )
        if violated():
            removed += self._drop_units(session, lambda m: True, violated)

        if violated() and session.messages:
            truncated += self._shrink_newest_unit(session, violated)
        if violated() and session.messages:
            removed += self._collapse_newest_unit(session)

        action = CompactionAction.DEHYDRATED if truncated or removed else CompactionAction.NOOP
        return CompactionOutcome(
            action,
            before,
            session.history_tokens,
            messages_removed=removed,
            messages_truncated=truncated,
        )

    def thin(self, session: Session) -> CompactionOutcome:
        """Truncate large tool outputs in the oldest third of history.

        Unlike ``dehydrate`` this does not consult the budget; every
        tool message over ``tool_output_threshold`` in range is stubbed.
        """
        before = session.history_tokens
        boundary = min(len(session.messages) // 3, self._window_start(session.messages))
        count = self._truncate_tool_outputs(
            session,
            0,
            boundary,
            lambda: True,
            min_cost=self._policy.tool_output_threshold,
        )
        action = CompactionAction.DEHYDRATED if count else CompactionAction.NOOP
        return CompactionOutcome(action, before, session.history_tokens, messages_truncated=count)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _window_start(self, history: list[Message]) -> int:
        """Index of the first message of the preserved window.

        The window covers the ``preserve_recent_turns`` most recent
        distinct turns, widened to a unit boundary.
        """
        keep = self._policy.preserve_recent_turns
        if keep <= 0 or not history:
            return len(history)
        turns = sorted({m.turn for m in history})
        recent = set(turns[-keep:])
        for unit in group_units(history):
            if any(m.turn in recent for m in unit.messages(history)):
                return unit.start
        return len(history)

    def _is_low_value(self, unit: _Unit, history: list[Message]) -> bool:
        messages = unit.messages(history)
        if any(m.pinned for m in messages):
            return False
        if unit.exchange:
            answered: set[str] = set()
            for m in messages[1:]:
                answered |= m.call_ids
            return messages[0].call_ids <= answered
        message = messages[0]
        if message.kind in (MessageKind.SUMMARY, MessageKind.CORRECTIVE):
            return True
        return message.role == Role.TOOL and message.token_cost > self._policy.tool_output_threshold

    def _low_value_runs(self, history: list[Message]) -> list[tuple[int, int]]:
        """Maximal runs of contiguous low-value units before the window."""
        window = self._window_start(history)
        runs: list[tuple[int, int]] = []
        run_start: int | None = None
        run_end = 0
        for unit in group_units(history):
            if unit.end > window:
                break
            if self._is_low_value(unit, history):
                if run_start is None:
                    run_start = unit.start
                run_end = unit.end
                continue
            if run_start is not None:
                runs.append((run_start, run_end))
                run_start = None
        if run_start is not None:
            runs.append((run_start, run_end))
        return [
            (s, e)
            for s, e in runs
            if not (e - s == 1 and history[s].kind == MessageKind.SUMMARY)
        ]

    # ------------------------------------------------------------------
    # Mutation helpers
    # ------------------------------------------------------------------

    def _summarize(self, run: list[Message]) -> Message:
        max_tokens = self._policy.summary_max_tokens
        try:
            text = self._summarizer.summarize(run, max_tokens=max_tokens)
        except Exception as exc:
            logger.warning(
                "Summarizer failed (%s: %s); using digest",
                classify_error(exc).kind.value,
                exc,
            )
            text = self._digest.summarize(run, max_tokens=max_tokens)
        header = SUMMARY_HEADER.format(count=len(run))
        return self._summary_message(run, f"{header}\n{text}")

    def _summary_message(self, run: list[Message], text: str) -> Message:
        message = Message(
            role=Role.USER,
            content=(TextBlock(text=text),),
            kind=MessageKind.SUMMARY,
            turn=run[0].turn,
        )
        return message.with_cost(self._estimator.estimate_tokens(message))

    def _shrink_newest_unit(self, session: Session, keep_going: Callable[[], bool]) -> int:
        unit = group_units(session.messages)[-1]
        count = self._truncate_tool_outputs(session, unit.start, unit.end, keep_going)

        for index in range(unit.start, unit.end):
            if not keep_going():
                return count
            message = session.messages[index]
            if message.role != Role.TOOL:
                continue
            blocks = tuple(
                b.model_copy(update={"output": DROPPED_MARKER}) if isinstance(b, ToolResultBlock) else b
                for b in message.content
            )
            if self._replace_if_smaller(session, index, blocks):
                count += 1

        head = session.messages[unit.start]
        if keep_going() and unit.exchange and head.text:
            blocks = tuple(b for b in head.content if not isinstance(b, TextBlock))
            if self._replace_if_smaller(session, unit.start, blocks):
                count += 1
        return count

    def _replace_if_smaller(self, session: Session, index: int, blocks: tuple) -> bool:
        message = session.messages[index]
        smaller = message.model_copy(update={"content": blocks, "kind": MessageKind.DEHYDRATED})
        smaller = smaller.with_cost(self._estimator.estimate_tokens(smaller))
        if smaller.token_cost >= message.token_cost:
            return False
        session.replace_range(index, index + 1, [smaller])
        return True

    def _collapse_newest_unit(self, session: Session) -> int:
        """Replace the newest exchange with a summary that fits the budget.

        The digest is cut to the room left; if even that does not fit,
        the bare header is used. Returns the number of messages removed,
        or 0 when no summary fits.
        """
        unit = group_units(session.messages)[-1]
        if not unit.exchange:
            return 0
        run = unit.messages(session.messages)
        run_cost = sum(m.token_cost for m in run)
        room = self._budget.history_budget - (session.history_tokens - run_cost)

        header = SUMMARY_HEADER.format(count=len(run))
        summary = self._summary_message(run, header)
        text_room = room - summary.token_cost
        if text_room > 0:
            digest = self._digest.summarize(run, max_tokens=text_room)
            candidate = self._summary_message(run, f"{header}\n{digest}")
            if candidate.token_cost <= room:
                summary = candidate
        if summary.token_cost > room or summary.token_cost >= run_cost:
            return 0

        session.replace_range(unit.start, unit.end, [summary])
        logger.debug("Collapsed newest exchange: %d -> %d tokens", run_cost, summary.token_cost)
        return len(run)

    def _stub(self, message: Message) -> Message:
        keep = self._policy.dehydrate_stub_tokens * _CHARS_PER_TOKEN
        blocks = []
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                text = block.output_text
                if len(text) > keep:
                    dropped = -(-(len(text) - keep) // _CHARS_PER_TOKEN)
                    text = f"{text[:keep]}\n[... {dropped} tokens dropped]"
                block = block.model_copy(update={"output": text})
            blocks.append(block)
        stub = message.model_copy(update={"content": tuple(blocks), "kind": MessageKind.DEHYDRATED})
        return stub.with_cost(self._estimator.estimate_tokens(stub))

    def _truncate_tool_outputs(
        self,
        session: Session,
        start: int,
        end: int,
        keep_going: Callable[[], bool],
        min_cost: int = 0,
    ) -> int:
        count = 0
        for index in range(start, min(end, len(session.messages))):
            if not keep_going():
                break
            message = session.messages[index]
            if message.role != Role.TOOL or message.kind == MessageKind.DEHYDRATED:
                continue
            if message.token_cost <= min_cost:
                continue
            stub = self._stub(message)
            if stub.token_cost >= message.token_cost:
                continue
            session.replace_range(index, index + 1, [stub])
            count += 1
        return count

    def _drop_units(
        self,
        session: Session,
        eligible: Callable[[Message], bool],
        keep_going: Callable[[], bool],
    ) -> int:
        """Drop eligible units oldest first, never the newest unit.

        Units outside the preserved window go before units inside it; a
        unit is eligible when every message in it passes *eligible*.
        System messages are considered only after everything else.
        """
        removed = 0
        for system_pass in (False, True):
            for inside_window in (False, True):
                while keep_going():
                    victim = self._next_victim(session.messages, eligible, inside_window, system_pass)
                    if victim is None:
                        break
                    removed += victim.end - victim.start
                    session.replace_range(victim.start, victim.end, [])
        return removed

    def _next_victim(
        self,
        history: list[Message],
        eligible: Callable[[Message], bool],
        inside_window: bool,
        system_pass: bool,
    ) -> _Unit | None:
        units = group_units(history)
        window = self._window_start(history)
        for unit in units[:-1]:
            if (unit.start >= window) != inside_window:
                continue
            messages = unit.messages(history)
            is_system = any(m.role == Role.SYSTEM for m in messages)
            if is_system != system_pass:
                continue
            if all(eligible(m) for m in messages):
                return unit
        return None

    @staticmethod
    def _largest_message(session: Session) -> tuple[int, int]:
        if not session.messages:
            return 0, 0
        index = max(range(len(session.messages)), key=lambda i: session.messages[i].token_cost)
        return index, session.messages[index].token_cost
