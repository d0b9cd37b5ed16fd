# tixr_etl/core/artists.py
"""
Extraction de l'artiste principal depuis un titre d'événement libre.

Les règles de nettoyage sont une liste ordonnée de (nom, action) : chaque
règle est testable isolément et l'ordre fait partie du contrat.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

# ------------------- listes métier -------------------

# titres d'événements qui ne sont pas de vrais événements
EXCLUDE_EVENT_WORDS = ("TEST", "TESTING", "PASS", "RÉSERVATIONS", "RÉSERVATION", "TEMPLATE")

# phrases qui ne sont pas des artistes (marque de salle, mots génériques)
DENY_LIST = (
    "moet city", "moët city", "le grand prix", "prix", "mutek", "édition",
    "évènement spécial", "room202", "produktworld", "admission", "taraka",
    "bazart", "city gas", "showcase", "special guest", "guests", "invité",
    "guest", "festival", "event", "experience", "produtk", "produkt",
    "soirée", "party", "post-race", "officiel", "after party", "ncg360",
    "visionnement", "montréal", "grand match", "off-piknic", "piknic",
    "ticket", "table", "official", "pass", "réveillon",
)

# exceptions connues : gagnent toujours sur la liste d'exclusion
ALLOW_LIST = ("mimouna night", "dome of faith")

MULTI_ARTIST_DELIMITERS = (", ", " + ", " b2b ", " & ", " x ", " / ")
FALLBACK_DELIMITERS = (",", "+", "&", "b2b", "/")

_DENY_RE = re.compile(r"\b(" + "|".join(re.escape(w) for w in DENY_LIST) + r")\b", re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\u0000-\u001F\u007F-\u009F]")


# ------------------- règles -------------------

@dataclass(frozen=True)
class CleanupRule:
    name: str
    apply: Callable[[str], str]


def _sub(pattern: str, repl: str = "", flags: int = re.IGNORECASE) -> Callable[[str], str]:
    rx = re.compile(pattern, flags)
    return lambda s: rx.sub(repl, s)


def _cut_at_first(delimiters: Sequence[str]) -> Callable[[str], str]:
    """Coupe au premier délimiteur de la liste présent dans la chaîne (ordre de la liste)."""
    def cut(s: str) -> str:
        for d in delimiters:
            if d in s:
                return s.split(d)[0]
        return s
    return cut


def _cut_at_each(separators: Sequence[str]) -> Callable[[str], str]:
    def cut(s: str) -> str:
        for sep in separators:
            s = s.split(sep)[0]
        return s.strip()
    return cut


_POSSESSIVE = re.compile(r"(\w+)'s\b", re.IGNORECASE)

def _possessive(s: str) -> str:
    m = _POSSESSIVE.search(s)
    return m.group(1) if m else s


CLEANUP_RULES: tuple[CleanupRule, ...] = (
    CleanupRule("promo_code", _sub(r"^gp\d+[:\-\s]*")),
    CleanupRule("presents", _sub(r"^(.+?)\s+(présente|présentent|presents?)\s+.+$", r"\1")),
    CleanupRule("multi_artist", _cut_at_first(MULTI_ARTIST_DELIMITERS)),
    CleanupRule("qualifier", _sub(r"\s+(et invités|and guests?|avec|feat\.?|featuring|b2b|vs\.?|x|ft\.?)\s.*$")),
    CleanupRule("parenthetical", _sub(r" *[\(\[].*?[\)\]] *", " ")),
    CleanupRule("title_separators", _cut_at_each(("|", " - ", " – ", " — ", ":"))),
    CleanupRule("possessive", _possessive),
    CleanupRule("branding", _sub(
        r"\b(tour(nee)?|tournée|edition|montr[eé]al|takeover|night|crankdat|produktworld|ncg360"
        r"|after party|officiel|post-race|off-piknic|off piknic|experience)\b.*$")),
    CleanupRule("years", _sub(r"\d{4,}")),
    CleanupRule("trailing_punctuation", _sub(r"[-–—|•:]+$")),
    CleanupRule("edge_symbols", _sub(r"^[\W_]+|[\W_]+$")),
)

_TRAILING_SUFFIX = re.compile(r"\b(\d{2,4}|live|tour|edition|set|experience)\b$", re.IGNORECASE)


# ------------------- utilitaires texte -------------------

def sanitize_name(s: Any) -> str:
    if not isinstance(s, str):
        return ""
    return _CONTROL_CHARS.sub("", s).strip()


_HYPHEN_CAPS = re.compile(r"([A-Z])-([A-Z]+)")

def to_title_case(name: str) -> str:
    """Casse titre, en laissant intacts les mots déjà en majuscules (DJ, MK…)."""
    words = []
    for word in name.split():
        if word == word.upper():
            words.append(word)
        else:
            words.append(word[:1].upper() + word[1:].lower())
    out = " ".join(words)
    return _HYPHEN_CAPS.sub(lambda m: f"{m.group(1)}-{m.group(2)[:1].upper()}{m.group(2)[1:].lower()}", out)


def apply_rules(name: str, rules: Sequence[CleanupRule] = CLEANUP_RULES) -> str:
    for rule in rules:
        name = rule.apply(name)
    return name


def is_allowed(name: str) -> bool:
    low = name.lower()
    return any(w in low for w in ALLOW_LIST)


def is_denied(name: str) -> bool:
    """Mot entier de la liste d'exclusion, sauf si la liste d'autorisation réclame le nom."""
    return bool(_DENY_RE.search(name.lower())) and not is_allowed(name)


# ------------------- extraction -------------------

def extract_main_artist(event_name: Optional[str]) -> Optional[str]:
    if not event_name or not isinstance(event_name, str):
        return None
    name = event_name.strip()

    if is_allowed(name):
        return to_title_case(re.sub(r"(Takeover|Night)$", "", name, flags=re.IGNORECASE).strip())

    cleaned = apply_rules(name)
    main = to_title_case(re.sub(r"\s{2,}", " ", sanitize_name(cleaned)))

    # filet de secours : découpe naïve sur les délimiteurs de premier niveau
    if not main:
        first = event_name
        for d in FALLBACK_DELIMITERS:
            first = first.split(d)[0]
        main = to_title_case(sanitize_name(first))
    if not main:
        return None

    # la liste d'exclusion ne s'applique qu'au résultat final
    if is_denied(main):
        return None

    main = _TRAILING_SUFFIX.sub("", main).strip()
    return main or None


def extract_artist(event: Dict[str, Any]) -> Optional[str]:
    """Tête d'affiche du premier lineup (rank 1) si présente, sinon depuis le titre."""
    lineups = event.get("lineups") or []
    if lineups:
        acts = (lineups[0] or {}).get("acts") or []
        if acts:
            main_act = next((a for a in acts if (a or {}).get("rank") == 1), acts[0]) or {}
            artist_name = ((main_act.get("artist") or {}).get("name") or "").strip()
            if artist_name:
                return artist_name
    return extract_main_artist(event.get("name"))


def should_exclude_event(name: Optional[str]) -> bool:
    if not name:
        return True
    upper = name.upper()
    return any(w in upper for w in EXCLUDE_EVENT_WORDS)
