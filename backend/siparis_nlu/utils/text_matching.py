"""Metin normalize, token ve benzerlik yardımcıları."""
from __future__ import annotations

import difflib
import re
import unicodedata
from typing import Iterable, List, Optional, Tuple

# NFKD ile ayrışmayan Türkçe harfler
_TR_FOLD = str.maketrans({"ı": "i", "İ": "i", "I": "i", "ğ": "g", "Ğ": "g"})

# WhatsApp kısaltmaları -> menüde geçen tam kelime
SLANG_MAP = {
    "lmc": "lahmacun",
    "lahmcun": "lahmacun",
    "lhmcn": "lahmacun",
    "lahmajun": "lahmacun",
    "donr": "doner",
    "dnr": "doner",
    "kebp": "kebap",
    "pid": "pide",
    "ayrn": "ayran",
    "hmbrg": "hamburger",
    "hmbrgr": "hamburger",
    "brgr": "burger",
    "pzza": "pizza",
    "pizz": "pizza",
    "coke": "kola",
    "cola": "kola",
    "icck": "icecek",
    "ptt": "patates",
    "ptts": "patates",
    "tvk": "tavuk",
    "adn": "adana",
    "iskdr": "iskender",
    "mrcmk": "mercimek",
    "plv": "pilav",
    "crb": "corba",
    "crba": "corba",
    "slt": "salata",
    "slata": "salata",
    "byk": "buyuk",
    "kck": "kucuk",
    "bi": "bir",
    "ii": "iki",
}

# Kelime sonuna gelebilen ekler (normalize edilmiş, ünlü uyumu varyantlarıyla)
TURKISH_SUFFIXES = frozenset(
    {
        "lardan", "lerden", "larina", "lerine",
        "larim", "lerim", "larin", "lerin",
        "lari", "leri", "lar", "ler",
        "imiz", "iniz", "umuz", "unuz",
        "dan", "den", "tan", "ten",
        "nin", "nun", "ina", "ine", "una", "une",
        "da", "de", "ta", "te",
        "yi", "yu", "ya", "ye",
        "ni", "nu", "na", "ne",
        "in", "un", "im", "um",
        "li", "lu", "siz", "suz",
        "si", "su",
        "i", "u", "a", "e",
    }
)

MIN_STEM_LENGTH = 3


def normalize(text: str) -> str:
    """Turkish-friendly normalize: lowercase + accent removal + punctuation strip + trim."""
    if not text:
        return ""
    text = text.translate(_TR_FOLD)
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.lower().strip()
    text = re.sub(r"[^a-z0-9\s]", " ", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def tokenize(text: str, expand_slang: bool = False) -> List[str]:
    tokens = normalize(text).split()
    if expand_slang:
        tokens = [SLANG_MAP.get(tok, tok) for tok in tokens]
    return tokens


def token_matches(candidate: str, reference: str) -> bool:
    """
    `candidate` (kullanıcı kelimesi) `reference` (menü kelimesi) ile eşleşiyor mu?

    Birebir eşitlik ya da referansın sonuna tek bir Türkçe ek gelmiş hali
    ("ayrani" -> "ayran", "lahmacunlar" -> "lahmacun").
    """
    if candidate == reference:
        return True
    if len(reference) < MIN_STEM_LENGTH or not candidate.startswith(reference):
        return False
    return candidate[len(reference):] in TURKISH_SUFFIXES


def similarity(a: str, b: str) -> float:
    """Return similarity ratio between two strings."""
    return difflib.SequenceMatcher(None, normalize(a), normalize(b)).ratio()


def closest_match(query: str, candidates: Iterable[str], threshold: float = 0.6) -> Optional[Tuple[str, float]]:
    normalize_query = normalize(query)
    best_match: Optional[Tuple[str, float]] = None
    for candidate in candidates:
        score = difflib.SequenceMatcher(None, normalize_query, normalize(candidate)).ratio()
        if score >= threshold and (best_match is None or score > best_match[1]):
            best_match = (candidate, score)
    return best_match
