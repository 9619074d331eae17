"""Reconciler: merge a validated extraction into the conversation's draft order.

The confidence gate is all-or-nothing. An extraction below the threshold, or
one that reports missing fields or asks a clarification question, leaves the
draft untouched and the caller surfaces the question instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ...core.logging_config import get_logger
from ...schemas.order import DraftOrderItem, ExtractedOrderData, ExtractedOrderItem, OptionSelection, OrderExtra
from ...utils.text_matching import closest_match, normalize
from .menu_index import MenuIndex

logger = get_logger(__name__)

CONFIDENCE_THRESHOLD = 0.55
NOTES_SEPARATOR = "; "
# Minimum similarity to snap an extracted group/option name onto the menu's spelling
NAME_SNAP_THRESHOLD = 0.85

LineKey = Tuple[str, Tuple[Tuple[str, str], ...]]


@dataclass(frozen=True)
class ReconcileResult:
    draft_order: List[DraftOrderItem]
    accepted: bool
    missing_fields: List[str] = field(default_factory=list)
    total_price: float = 0.0
    gate_reason: Optional[str] = None


def gate_reason(extracted: ExtractedOrderData, threshold: float = CONFIDENCE_THRESHOLD) -> Optional[str]:
    """Why the extraction must not touch the draft, or None if it may."""
    if extracted.confidence < threshold:
        return "low_confidence"
    if extracted.missing_fields:
        return "missing_fields"
    if extracted.clarification_question is not None:
        return "clarification_requested"
    return None


def selection_key(selections: Iterable[OptionSelection]) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted({(normalize(s.group_name), normalize(s.option_name)) for s in selections}))


def line_key(menu_item_id: str, selections: Iterable[OptionSelection]) -> LineKey:
    return (menu_item_id, selection_key(selections))


def _snap(name: str, choices: Sequence[str]) -> str:
    wanted = normalize(name)
    for choice in choices:
        if normalize(choice) == wanted:
            return choice
    match = closest_match(name, choices, threshold=NAME_SNAP_THRESHOLD)
    return match[0] if match else name


def normalize_selections(
    menu_item_id: str,
    selections: Sequence[OptionSelection],
    index: Optional[MenuIndex] = None,
) -> List[OptionSelection]:
    """Canonical spelling, no duplicate pairs, one option per SINGLE group (last wins)."""
    result: Dict[Tuple[str, str], OptionSelection] = {}
    single_groups: Dict[str, Tuple[str, str]] = {}
    groups = index.groups_for_item(menu_item_id) if index is not None else []
    group_names = [g.name for g in groups]

    for sel in selections:
        group_name = _snap(sel.group_name, group_names) if group_names else sel.group_name.strip()
        option_name = sel.option_name.strip()
        group = index.find_group(menu_item_id, group_name) if index is not None else None
        if group is not None:
            option_name = _snap(option_name, [o.name for o in group.options])
        canonical = OptionSelection(group_name=group_name, option_name=option_name)
        pair = (normalize(group_name), normalize(option_name))

        if group is not None and group.effective_max == 1:
            previous = single_groups.get(pair[0])
            if previous is not None:
                result.pop(previous, None)
            single_groups[pair[0]] = pair
        result[pair] = canonical

    return sorted(result.values(), key=lambda s: (normalize(s.group_name), normalize(s.option_name)))


def merge_notes(existing: Optional[str], incoming: Optional[str]) -> Optional[str]:
    parts: List[str] = []
    for source in (existing, incoming):
        if not source:
            continue
        for part in source.split(NOTES_SEPARATOR):
            part = part.strip()
            if part and part not in parts:
                parts.append(part)
    return NOTES_SEPARATOR.join(parts) if parts else None


def merge_extras(existing: Sequence[OrderExtra], incoming: Sequence[OrderExtra]) -> List[OrderExtra]:
    merged = list(existing)
    known = {normalize(extra.name) for extra in existing}
    for extra in incoming:
        name = normalize(extra.name)
        if name and name not in known:
            merged.append(extra)
            known.add(name)
    return merged


def _lines_by_key(draft_order: Sequence[DraftOrderItem], index: Optional[MenuIndex]) -> Dict[LineKey, DraftOrderItem]:
    lines: Dict[LineKey, DraftOrderItem] = {}
    for item in draft_order:
        selections = normalize_selections(item.menu_item_id, item.option_selections, index)
        key = line_key(item.menu_item_id, selections)
        current = lines.get(key)
        if current is None:
            lines[key] = item.model_copy(update={"option_selections": selections})
        else:
            lines[key] = _add_to_line(current, item.qty, item.extras, item.notes)
    return lines


def _add_to_line(line: DraftOrderItem, qty: int, extras: Sequence[OrderExtra], notes: Optional[str]) -> DraftOrderItem:
    return line.model_copy(
        update={
            "qty": line.qty + qty,
            "extras": merge_extras(line.extras, extras),
            "notes": merge_notes(line.notes, notes),
        }
    )


def _apply_item(lines: Dict[LineKey, DraftOrderItem], item: ExtractedOrderItem, index: Optional[MenuIndex]) -> None:
    selections = normalize_selections(item.menu_item_id, item.option_selections, index)
    key = line_key(item.menu_item_id, selections)

    if item.action == "keep":
        return

    if item.action == "remove":
        if key in lines:
            del lines[key]
            return
        if not selections:
            # "ayranı çıkar" without options: drop the only line of that item, if unambiguous
            same_item = [k for k in lines if k[0] == item.menu_item_id]
            if len(same_item) == 1:
                del lines[same_item[0]]
        return

    current = lines.get(key)
    if current is not None:
        lines[key] = _add_to_line(current, item.qty, item.extras, item.notes)
    else:
        lines[key] = DraftOrderItem(
            menu_item_id=item.menu_item_id,
            qty=item.qty,
            option_selections=selections,
            extras=merge_extras([], item.extras),
            notes=merge_notes(None, item.notes),
        )


def derive_missing_fields(draft_order: Sequence[DraftOrderItem], index: Optional[MenuIndex]) -> List[str]:
    """Structural gaps left on the draft, e.g. a required option group nobody chose."""
    if index is None:
        return []
    missing: List[str] = []

    def _add(value: str) -> None:
        if value not in missing:
            missing.append(value)

    for item in draft_order:
        if index.item(item.menu_item_id) is None:
            _add(f"{item.menu_item_id}:unavailable")
            continue
        for group in index.groups_for_item(item.menu_item_id):
            wanted = normalize(group.name)
            count = sum(1 for sel in item.option_selections if normalize(sel.group_name) == wanted)
            if count < group.effective_min:
                _add(f"{item.menu_item_id}:{group.name}")
            elif group.effective_max is not None and count > group.effective_max:
                _add(f"{item.menu_item_id}:{group.name}:max")
    return missing


def compute_total(draft_order: Sequence[DraftOrderItem], index: Optional[MenuIndex]) -> float:
    if index is None:
        return 0.0
    total = 0.0
    for item in draft_order:
        entry = index.item(item.menu_item_id)
        if entry is None:
            continue
        unit = entry.base_price
        for sel in item.option_selections:
            group = index.find_group(item.menu_item_id, sel.group_name)
            option = group.find_option(sel.option_name) if group is not None else None
            if option is not None:
                unit += option.price_delta
        total += unit * item.qty
    return round(total + 1e-9, 2)


def reconcile(
    draft_order: Sequence[DraftOrderItem],
    extracted: ExtractedOrderData,
    index: Optional[MenuIndex] = None,
    threshold: float = CONFIDENCE_THRESHOLD,
) -> ReconcileResult:
    reason = gate_reason(extracted, threshold)
    if reason is not None:
        unchanged = list(draft_order)
        logger.info("reconcile_gated", reason=reason, confidence=extracted.confidence)
        return ReconcileResult(
            draft_order=unchanged,
            accepted=False,
            missing_fields=derive_missing_fields(unchanged, index),
            total_price=compute_total(unchanged, index),
            gate_reason=reason,
        )

    lines = _lines_by_key(draft_order, index)
    for item in extracted.items:
        _apply_item(lines, item, index)

    merged = list(lines.values())
    missing = derive_missing_fields(merged, index)
    logger.info(
        "reconcile_accepted",
        lines_before=len(draft_order),
        lines_after=len(merged),
        derived_missing=len(missing),
    )
    return ReconcileResult(
        draft_order=merged,
        accepted=True,
        missing_fields=missing,
        total_price=compute_total(merged, index),
    )
