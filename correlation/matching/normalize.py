"""
Text normalization shared by the matchers.

Vehicle registrations, driver names and location/customer names all come
from different systems with their own casing, punctuation and ordering
conventions. Everything here is a pure function.
"""

import re
from typing import Optional

# Registration characters commonly mis-keyed between systems
REGISTRATION_CONFUSABLES = str.maketrans({"O": "0", "I": "1"})

LOCATION_PREFIXES = re.compile(r"^(AU |AUSTRALIA )")
TERMINAL_WORDS = re.compile(r"\b(TERM|TERMINAL|THDPTY)\b")
CORPORATE_SUFFIXES = re.compile(r"\b(PTY LTD|PTY|LTD|CORPORATION|CORP|INC)$")
SITE_SUFFIXES = re.compile(r"\b(GARAGE|SERVICE STATION)$")

# Terminal towns, checked in order; first hit wins
TERMINAL_TOWNS = [
    (("KEWDALE",), "TERMINAL KEWDALE"),
    (("GERALDTON",), "TERMINAL GERALDTON"),
    (("KALGOORLIE",), "TERMINAL KALGOORLIE"),
    (("COOGEE", "ROCKINGHAM"), "TERMINAL COOGEE ROCKINGHAM"),
    (("ESPERANCE",), "TERMINAL ESPERANCE"),
    (("FREMANTLE",), "TERMINAL FREMANTLE"),
    (("BUNBURY",), "TERMINAL BUNBURY"),
    (("PORT HEDLAND",), "TERMINAL PORT HEDLAND"),
    (("NEWMAN",), "TERMINAL NEWMAN"),
    (("BROOME",), "TERMINAL BROOME"),
    (("ALBANY",), "TERMINAL ALBANY"),
    (("MERREDIN",), "TERMINAL MERREDIN"),
    (("WONGAN HILLS",), "TERMINAL WONGAN HILLS"),
    (("KARRATHA",), "TERMINAL KARRATHA"),
]

# (all of these must appear, identifier); first hit wins
BUSINESS_IDENTIFIERS = [
    (("KCGM",), "KCGM"),
    (("KALGOORLIE CONSOLIDATED GOLD",), "KCGM"),
    (("BGC",), "BGC"),
    (("SOUTH32",), "SOUTH32_WORSLEY"),
    (("WORSLEY",), "SOUTH32_WORSLEY"),
    (("WESTERN POWER",), "WESTERN_POWER"),
    (("AIRPORT",), "AIRPORT"),
    (("AIRPT",), "AIRPORT"),
    (("PRECAST",), "BGC_PRECAST"),
    (("NAVAL BASE",), "BGC_NAVAL_BASE"),
    (("KWINANA BEACH",), "BGC_KWINANA"),
    (("JUNDEE", "MINE"), "JUNDEE_MINE"),
    (("FORRESTFIELD", "AWR"), "AWR_FORRESTFIELD"),
]

LOCATION_REFERENCES = [
    (("KALGOORLIE",), "KALGOORLIE"),
    (("GERALDTON",), "GERALDTON"),
    (("KWINANA",), "KWINANA"),
    (("FORRESTFIELD",), "FORRESTFIELD"),
    (("NAVAL BASE",), "NAVAL_BASE"),
    (("COOGEE",), "COOGEE_ROCKINGHAM"),
    (("ROCKINGHAM",), "COOGEE_ROCKINGHAM"),
    (("FREMANTLE",), "FREMANTLE"),
    (("BUNBURY",), "BUNBURY"),
    (("ESPERANCE",), "ESPERANCE"),
    (("ALBANY",), "ALBANY"),
    (("PORT HEDLAND",), "PORT_HEDLAND"),
    (("NEWMAN",), "NEWMAN"),
    (("BROOME",), "BROOME"),
    (("KARRATHA",), "KARRATHA"),
    (("MERREDIN",), "MERREDIN"),
    (("WONGAN HILLS",), "WONGAN_HILLS"),
    (("PERTH",), "PERTH"),
    (("KEWDALE",), "KEWDALE"),
    (("PILBARA",), "PILBARA"),
]

# Formal first name -> common short forms
NICKNAMES = {
    "michael": ["mike", "mick", "mickey"],
    "william": ["bill", "will", "billy", "willie"],
    "james": ["jim", "jimmy", "jamie"],
    "robert": ["rob", "bob", "bobby", "robbie"],
    "richard": ["rick", "dick", "ricky", "rich"],
    "david": ["dave", "davey"],
    "christopher": ["chris", "kris"],
    "matthew": ["matt", "matty"],
    "andrew": ["andy", "drew"],
    "joseph": ["joe", "joey"],
    "daniel": ["dan", "danny"],
    "anthony": ["tony", "ant"],
    "steven": ["steve", "stevie"],
    "stephen": ["steve", "stevie"],
    "kenneth": ["ken", "kenny"],
    "joshua": ["josh"],
    "kevin": ["kev"],
    "edward": ["ed", "eddie", "ted"],
    "ronald": ["ron", "ronnie"],
    "timothy": ["tim", "timmy"],
    "jeffrey": ["jeff"],
    "jacob": ["jake"],
    "nicholas": ["nick", "nicky"],
    "jonathan": ["jon", "johnny"],
    "john": ["johnny", "jack"],
    "thomas": ["tom", "tommy"],
    "benjamin": ["ben", "benny"],
    "samuel": ["sam", "sammy"],
    "peter": ["pete"],
    "gregory": ["greg"],
}

# Short form -> formal names it can stand for
_FORMAL_NAMES: dict[str, list[str]] = {}
for _formal, _short_forms in NICKNAMES.items():
    for _short in _short_forms:
        _FORMAL_NAMES.setdefault(_short, []).append(_formal)


def normalize_registration(registration: Optional[str]) -> Optional[str]:
    """
    Canonical registration key: alphanumerics only, uppercase, with the
    letters O and I folded onto the digits 0 and 1.
    """
    if not registration:
        return None
    key = re.sub(r"[^A-Za-z0-9]", "", registration).upper()
    key = key.translate(REGISTRATION_CONFUSABLES)
    return key or None


def normalize_text(text: Optional[str]) -> str:
    """Uppercase, punctuation to spaces, collapsed whitespace."""
    if not text:
        return ""
    normalized = re.sub(r"[^\w\s]", " ", text.upper())
    return re.sub(r"\s+", " ", normalized).strip()


def normalize_location_name(text: Optional[str]) -> str:
    """
    Normalize a location/customer/terminal name for comparison.

    Strips country prefixes and corporate/site suffixes, and collapses
    any terminal reference ("AU TERM KEWDALE", "Kewdale Terminal") onto
    the canonical "TERMINAL <TOWN>" form.
    """
    normalized = normalize_text(text)
    if not normalized:
        return ""

    normalized = LOCATION_PREFIXES.sub("", normalized)
    normalized = TERMINAL_WORDS.sub("TERMINAL", normalized)
    normalized = CORPORATE_SUFFIXES.sub("", normalized).strip()
    normalized = SITE_SUFFIXES.sub("", normalized).strip()

    if "TERMINAL" in normalized:
        canonical = _first_hit(normalized, TERMINAL_TOWNS)
        if canonical:
            return canonical

    return re.sub(r"\s+", " ", normalized).strip()


def extract_business_identifier(text: Optional[str]) -> Optional[str]:
    """Known customer business behind a free-text name, if any."""
    return _first_hit(normalize_text(text), BUSINESS_IDENTIFIERS)


def extract_location_reference(text: Optional[str]) -> Optional[str]:
    """Known town/area referenced by a free-text name, if any."""
    return _first_hit(normalize_text(text), LOCATION_REFERENCES)


def _first_hit(normalized: str, table: list) -> Optional[str]:
    if not normalized:
        return None
    padded = f" {normalized} "
    for needles, value in table:
        if all(needle in padded for needle in needles):
            return value
    return None


def normalize_driver_name(name: Optional[str]) -> str:
    """
    Normalize a driver name to lowercase "first [middle] last".

    "SMITH, John" and "John Smith" both become "john smith".
    """
    if not name or not name.strip():
        return ""

    name = name.strip()
    if "," in name:
        last, _, rest = name.partition(",")
        name = f"{rest} {last}"

    name = re.sub(r"[^\w\s'-]", " ", name.lower())
    return re.sub(r"\s+", " ", name).strip()


def driver_name_variants(name: Optional[str]) -> set[str]:
    """
    Normalized name plus first-name nickname/formal-name substitutions.

    "Bob Smith" yields {"bob smith", "robert smith"}.
    """
    normalized = normalize_driver_name(name)
    if not normalized:
        return set()

    variants = {normalized}
    parts = normalized.split(" ")
    if len(parts) < 2:
        return variants

    first, rest = parts[0], " ".join(parts[1:])
    for alternative in NICKNAMES.get(first, []) + _FORMAL_NAMES.get(first, []):
        variants.add(f"{alternative} {rest}")

    # Middle names are often dropped by one side
    if len(parts) > 2:
        variants.add(f"{first} {parts[-1]}")

    return variants
