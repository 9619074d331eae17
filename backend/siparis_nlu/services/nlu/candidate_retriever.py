"""Candidate retrieval: rank menu items (and options) mentioned in free text.

Every synonym phrase is scored over sliding windows of the utterance sized
to the phrase's token count:

    score = weight * matched_tokens / max(tokens_in_phrase, tokens_in_window)

Scores are aggregated per target by maximum, then sorted by score, by the
token count of the winning phrase (specific before generic) and finally by
target id.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from ...core.logging_config import get_logger
from ...schemas.order import MenuCandidate
from ...utils.text_matching import token_matches, tokenize
from .menu_index import MenuIndex, SynonymEntry

logger = get_logger(__name__)

DEFAULT_TOP_K = 8


@dataclass(frozen=True)
class OptionCandidate:
    option_id: str
    name: str
    group_name: str
    score: float
    synonyms_matched: Tuple[str, ...] = ()


@dataclass
class _TargetScore:
    kind: str
    target_id: str
    score: float
    phrase_tokens: int
    matched: Dict[str, float]

    def sort_key(self):
        return (-self.score, self.phrase_tokens, self.target_id)


def _phrase_score(phrase_tokens: Sequence[str], utterance_tokens: Sequence[str]) -> float:
    size = len(phrase_tokens)
    if size == 0 or not utterance_tokens:
        return 0.0
    if len(utterance_tokens) <= size:
        windows = [utterance_tokens]
    else:
        windows = [utterance_tokens[i : i + size] for i in range(len(utterance_tokens) - size + 1)]

    wanted = set(phrase_tokens)
    best = 0.0
    for window in windows:
        matched = sum(1 for p in wanted if any(token_matches(u, p) for u in window))
        if matched:
            best = max(best, matched / max(size, len(window)))
        if best == 1.0:
            break
    return best


def _score_targets(utterance: str, index: MenuIndex) -> List[_TargetScore]:
    tokens = tokenize(utterance, expand_slang=True)
    if not tokens:
        return []

    aggregated: Dict[Tuple[str, str], _TargetScore] = {}
    for synonym in index.synonyms:
        ratio = _phrase_score(synonym.tokens, tokens)
        if ratio <= 0.0:
            continue
        score = synonym.weight * ratio
        kind, target_id = synonym.target
        _merge(aggregated, kind, target_id, score, synonym)

    return sorted(aggregated.values(), key=_TargetScore.sort_key)


def _merge(aggregated: Dict[Tuple[str, str], _TargetScore], kind: str, target_id: str, score: float, synonym: SynonymEntry) -> None:
    current = aggregated.get((kind, target_id))
    if current is None:
        aggregated[(kind, target_id)] = _TargetScore(
            kind=kind,
            target_id=target_id,
            score=score,
            phrase_tokens=len(synonym.tokens),
            matched={synonym.source_phrase or synonym.phrase: score},
        )
        return
    label = synonym.source_phrase or synonym.phrase
    current.matched[label] = max(score, current.matched.get(label, 0.0))
    if score > current.score or (score == current.score and len(synonym.tokens) < current.phrase_tokens):
        current.score = score
        current.phrase_tokens = len(synonym.tokens)


def _matched_list(target: _TargetScore) -> List[str]:
    return [phrase for phrase, _ in sorted(target.matched.items(), key=lambda kv: (-kv[1], kv[0]))]


def retrieve(utterance: str, index: MenuIndex, top_k: int = DEFAULT_TOP_K) -> List[MenuCandidate]:
    """Return up to `top_k` menu item candidates for `utterance`, best first.

    Pure and deterministic; returns an empty list instead of raising.
    """
    try:
        candidates: List[MenuCandidate] = []
        for target in _score_targets(utterance, index):
            if len(candidates) >= top_k:
                break
            if target.kind != "item":
                continue
            entry = index.item(target.target_id)
            if entry is None:
                continue
            candidates.append(
                MenuCandidate(
                    menu_item_id=entry.menu_item_id,
                    name=entry.name,
                    category=entry.category,
                    base_price=entry.base_price,
                    synonyms_matched=_matched_list(target),
                    score=round(target.score, 4),
                )
            )
        return candidates
    except Exception:
        logger.exception("candidate_retrieval_failed", tenant_id=index.tenant_id)
        return []


def retrieve_options(utterance: str, index: MenuIndex, top_k: int = DEFAULT_TOP_K) -> List[OptionCandidate]:
    """Options mentioned in the utterance (e.g. "acılı"), used as prompt hints."""
    try:
        found: List[OptionCandidate] = []
        for target in _score_targets(utterance, index):
            if len(found) >= top_k:
                break
            if target.kind != "option":
                continue
            option = index.options.get(target.target_id)
            if option is None:
                continue
            group = index.option_groups.get(option.group_id)
            found.append(
                OptionCandidate(
                    option_id=option.id,
                    name=option.name,
                    group_name=group.name if group else "",
                    score=round(target.score, 4),
                    synonyms_matched=tuple(_matched_list(target)),
                )
            )
        return found
    except Exception:
        logger.exception("option_retrieval_failed", tenant_id=index.tenant_id)
        return []
