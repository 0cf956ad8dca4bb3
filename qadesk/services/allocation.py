"""Distribute audio files across quality analysts.

Two strategies are supported:

* ``random`` (the default): every analyst gets ``floor(pool * target / total)``
  files and the remainder is dealt round-robin in the order the analysts were
  given. Files are handed out in list order unless ``shuffle`` is set.
* ``agent-balanced``: files are grouped by the agent found in their call
  metadata and every group is split across analysts the same way, with the
  round-robin pointer carried from one group to the next so no analyst
  collects all of the leftovers.

When the targets add up to fewer files than are available they act as caps
and the excess files stay unassigned. When they add up to at least the number
of files, every file is assigned and shares are proportional.

This module is pure: it plans, :mod:`qadesk.services.assignments` persists.
"""
import logging
import random
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import ValidationError

log = logging.getLogger(__name__)

STRATEGIES = ("random", "agent-balanced")
UNKNOWN_AGENT = "unknown"

# normalized (lower case, alphanumerics only) spellings of the agent id column
AGENT_ID_KEYS = ("agentid", "olmsid", "advisorid")


@dataclass
class AllocationTarget:
    analyst_id: int
    count: int


@dataclass
class AllocationPlan:
    strategy: str
    assignments: List[Tuple[Any, int]] = field(default_factory=list)
    unassigned: List[Any] = field(default_factory=list)

    def files_for(self, analyst_id):
        return [f for f, qa in self.assignments if qa == analyst_id]

    @property
    def counts(self) -> Dict[int, int]:
        out: Dict[int, int] = {}
        for _, qa in self.assignments:
            out[qa] = out.get(qa, 0) + 1
        return out

    def by_analyst(self) -> "OrderedDict[int, list]":
        grouped: "OrderedDict[int, list]" = OrderedDict()
        for f, qa in self.assignments:
            grouped.setdefault(qa, []).append(f)
        return grouped


def _norm_key(key) -> str:
    return re.sub(r"[^a-z0-9]", "", str(key).lower())


def agent_id_from_metadata(metadata) -> Optional[str]:
    """Return the agent identifier embedded in call metadata, if any.

    The canonical ``agentId`` key wins; otherwise any spelling of it
    (``agent_id``, ``AgentID``, ``Agent ID``, ``OLMSID``...) is accepted.
    """
    if not isinstance(metadata, dict) or not metadata:
        return None
    candidates = []
    if "agentId" in metadata:
        candidates.append(metadata["agentId"])
    for wanted in AGENT_ID_KEYS:
        for key, value in metadata.items():
            if _norm_key(key) == wanted:
                candidates.append(value)
    for value in candidates:
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def file_agent_id(audio_file) -> str:
    if isinstance(audio_file, dict):
        metadata = audio_file.get("call_metrics") or audio_file.get("callMetrics") or audio_file
    else:
        metadata = getattr(audio_file, "call_metrics", None)
    return agent_id_from_metadata(metadata) or UNKNOWN_AGENT


def normalize_targets(raw: Iterable) -> List[AllocationTarget]:
    """Accept AllocationTarget objects, ``{"id", "count"}`` dicts or pairs."""
    targets = []
    for item in raw or []:
        if isinstance(item, AllocationTarget):
            qa, count = item.analyst_id, item.count
        elif isinstance(item, dict):
            qa = item.get("id", item.get("qualityAnalystId", item.get("analyst_id")))
            count = item.get("count", 0)
        else:
            try:
                qa, count = item
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid allocation target: {item!r}")
        try:
            qa = int(qa)
            count = int(count)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid allocation target: {item!r}")
        if count < 0:
            raise ValidationError("Target counts must not be negative", {"qualityAnalystId": qa})
        targets.append(AllocationTarget(qa, count))

    seen = set()
    for t in targets:
        if t.analyst_id in seen:
            raise ValidationError("Quality analyst listed more than once", {"qualityAnalystId": t.analyst_id})
        seen.add(t.analyst_id)
    return targets


def _baseline(size: int, counts: List[int], total: int) -> List[int]:
    return [size * c // total for c in counts]


def _next_open(pointer: int, counts: List[int], capacity: Optional[List[int]]) -> Optional[int]:
    """Index of the next analyst from ``pointer`` that may take another file."""
    k = len(counts)
    for step in range(k):
        idx = (pointer + step) % k
        if counts[idx] <= 0:
            continue
        if capacity is not None and capacity[idx] <= 0:
            continue
        return idx
    return None


def _plan_random(files, targets, plan):
    counts = [t.count for t in targets]
    total = sum(counts)
    pool = min(len(files), total)
    shares = _baseline(pool, counts, total)

    pointer = 0
    for _ in range(pool - sum(shares)):
        idx = _next_open(pointer, counts, None)
        shares[idx] += 1
        pointer = idx + 1

    cursor = 0
    for target, share in zip(targets, shares):
        for f in files[cursor:cursor + share]:
            plan.assignments.append((f, target.analyst_id))
        cursor += share
    plan.unassigned.extend(files[cursor:])


def _plan_agent_balanced(files, targets, plan, agent_key):
    counts = [t.count for t in targets]
    total = sum(counts)
    capacity = list(counts) if total < len(files) else None

    groups: "OrderedDict[str, list]" = OrderedDict()
    for f in files:
        groups.setdefault(agent_key(f), []).append(f)

    pointer = 0
    for agent, group in groups.items():
        shares = _baseline(len(group), counts, total)
        if capacity is not None:
            shares = [min(s, c) for s, c in zip(shares, capacity)]

        cursor = 0
        for idx, share in enumerate(shares):
            for f in group[cursor:cursor + share]:
                plan.assignments.append((f, targets[idx].analyst_id))
            cursor += share
            if capacity is not None:
                capacity[idx] -= share

        for f in group[cursor:]:
            idx = _next_open(pointer, counts, capacity)
            if idx is None:
                plan.unassigned.append(f)
                continue
            plan.assignments.append((f, targets[idx].analyst_id))
            if capacity is not None:
                capacity[idx] -= 1
            pointer = (idx + 1) % len(targets)
        log.debug("agent group %s: %d files, pointer now %d", agent, len(group), pointer)


def plan_allocation(
    files: Iterable,
    targets: Iterable,
    strategy: str = "random",
    shuffle: bool = False,
    seed: Optional[int] = None,
    agent_key: Optional[Callable[[Any], str]] = None,
) -> AllocationPlan:
    """Plan which analyst evaluates each file.

    ``files`` may be model instances or dicts; they are returned untouched in
    the plan. ``targets`` is anything :func:`normalize_targets` accepts.
    """
    strategy = (strategy or "random").strip().lower()
    if strategy not in STRATEGIES:
        raise ValidationError(f"Unknown distribution method: {strategy}", {"allowed": list(STRATEGIES)})
    targets = normalize_targets(targets)
    if not targets:
        raise ValidationError("At least one quality analyst is required")

    files = list(files)
    plan = AllocationPlan(strategy=strategy)
    if not files:
        return plan

    if shuffle:
        random.Random(seed).shuffle(files)

    if len(targets) == 1:
        qa = targets[0].analyst_id
        plan.assignments.extend((f, qa) for f in files)
        return plan

    if sum(t.count for t in targets) <= 0:
        raise ValidationError("At least one quality analyst needs a positive target count")

    if strategy == "agent-balanced":
        _plan_agent_balanced(files, targets, plan, agent_key or file_agent_id)
    else:
        _plan_random(files, targets, plan)

    log.info("planned %d of %d files across %d analysts (%s)",
             len(plan.assignments), len(files), len(targets), strategy)
    return plan
