"""
Rule-based extraction of durable personal facts from user messages.

Extraction is pure and deterministic: the same message always yields the
same ordered list of facts. Rules are evaluated in declaration order and
matches within a rule in text order. Every rule owns an explicit builder, so
patterns that place the relation and the name in different capture groups
("my mother is Diane" vs "Diane is my mother") cannot be confused.

Name captures are case-sensitive on their first letter even though the
surrounding pattern is not, so "my mother is tired" is not read as a name.
"""
import re
from dataclasses import dataclass, field
from re import Match, Pattern
from typing import Callable, List, Optional

_RELATIONS = (
    r"father|dad|mother|mom|brother|sister|wife|husband|son|daughter|"
    r"grandfather|grandpa|grandmother|grandma|uncle|aunt|cousin|"
    r"friend|partner|boyfriend|girlfriend|fiance|fiancee"
)

_RELATION_ALIASES = {
    "dad": "father",
    "mom": "mother",
    "grandpa": "grandfather",
    "grandma": "grandmother",
}

_NAME = r"(?-i:[A-Z])[a-zA-Z\s]+?"
_NAME_END = r"(?=\.|,|!|\?|$|\s+and\b|\s+but\b|\s+who\b|\s+he\b|\s+she\b)"

_PETS = r"dog|cat|bird|fish|hamster|rabbit|parrot|turtle|pet"


@dataclass
class ExtractedFact:
    fact: str
    topic: str
    tags: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class FactRule:
    """One pattern variant and how to turn its match into a fact."""
    name: str
    pattern: Pattern
    build: Callable[[Match], Optional[ExtractedFact]]
    # Cheap prefilter on the lowercased, space-padded message
    applies: Optional[Callable[[str], bool]] = None


def _clean(value: str) -> str:
    value = re.sub(r"\s+", " ", value).strip()
    return value.rstrip(",;: ")


def _normalize_relation(relation: str) -> str:
    relation = relation.lower()
    return _RELATION_ALIASES.get(relation, relation)


def _family_builder(relation_group: int, name_group: int) -> Callable[[Match], Optional[ExtractedFact]]:
    def build(match: Match) -> Optional[ExtractedFact]:
        relation = _normalize_relation(match.group(relation_group))
        person = _clean(match.group(name_group))
        if not 1 < len(person) < 50:
            return None
        return ExtractedFact(
            fact=f"User's {relation}'s name is {person}",
            topic="family",
            tags=["family", relation, "personal", "name"],
        )
    return build


def _own_name(match: Match) -> Optional[ExtractedFact]:
    name = _clean(match.group(1))
    if not 1 < len(name) < 30:
        return None
    return ExtractedFact(fact=f"User's name is {name}", topic="personal", tags=["name", "personal", "identity"])


def _location(match: Match) -> Optional[ExtractedFact]:
    place = _clean(match.group(1))
    if not 2 < len(place) < 100:
        return None
    return ExtractedFact(fact=f"User lives in {place}", topic="location", tags=["location", "home", "personal"])


def _employer(match: Match) -> Optional[ExtractedFact]:
    employer = _clean(match.group(1))
    if not 2 < len(employer) < 100:
        return None
    return ExtractedFact(fact=f"User works at {employer}", topic="work", tags=["work", "employer", "personal"])


def _occupation(match: Match) -> Optional[ExtractedFact]:
    occupation = _clean(match.group(1))
    if not 2 < len(occupation) < 100:
        return None
    return ExtractedFact(fact=f"User works as {occupation}", topic="work", tags=["work", "occupation", "personal"])


def _birthday(match: Match) -> Optional[ExtractedFact]:
    date = _clean(match.group(1))
    if not date:
        return None
    return ExtractedFact(fact=f"User's birthday is {date}", topic="personal", tags=["birthday", "personal"])


def _age(match: Match) -> Optional[ExtractedFact]:
    return ExtractedFact(fact=f"User is {match.group(1)} years old", topic="personal", tags=["age", "personal"])


def _pet(match: Match) -> Optional[ExtractedFact]:
    kind = match.group(1).lower()
    pet_name = match.group(2)
    if pet_name:
        fact = f"User has a {kind} named {pet_name}"
    else:
        fact = f"User has a {kind}"
    return ExtractedFact(fact=fact, topic="pets", tags=["pets", kind, "personal"])


def _likes(match: Match) -> Optional[ExtractedFact]:
    thing = _clean(match.group(1))
    if not 2 < len(thing) < 50:
        return None
    return ExtractedFact(fact=f"User likes {thing}", topic="preferences", tags=["preferences", "likes", "personal"])


def _favorite(match: Match) -> Optional[ExtractedFact]:
    category = match.group(1).lower()
    value = _clean(match.group(2))
    if not 2 < len(value) < 50:
        return None
    return ExtractedFact(
        fact=f"User's favorite {category} is {value}",
        topic="preferences",
        tags=["preferences", category, "personal"],
    )


def _mentions_preference(padded: str) -> bool:
    return any(word in padded for word in (" love ", " like ", " prefer ", " favorite ", " favourite ", " enjoy "))


def _compile(pattern: str) -> Pattern:
    return re.compile(pattern, re.IGNORECASE)


FACT_RULES: List[FactRule] = [
    # Family, three phrasings with different group layouts
    FactRule(
        "family_named",
        _compile(rf"\bmy\s+({_RELATIONS})(?:['’]s)?\s+(?:name\s+)?(?:is|was|are)\s+({_NAME}){_NAME_END}"),
        _family_builder(relation_group=1, name_group=2),
    ),
    FactRule(
        "family_have_named",
        _compile(rf"\bi\s+have\s+an?\s+({_RELATIONS})\s+(?:named|called)\s+({_NAME}){_NAME_END}"),
        _family_builder(relation_group=1, name_group=2),
    ),
    FactRule(
        "family_is_my",
        _compile(rf"\b((?-i:[A-Z][a-z]+)(?:\s+(?-i:[A-Z][a-z]+)){{0,2}})\s+is\s+my\s+({_RELATIONS})\b"),
        _family_builder(relation_group=2, name_group=1),
    ),
    # Own name
    FactRule("name_is", _compile(rf"\bmy\s+name\s+is\s+({_NAME}){_NAME_END}"), _own_name),
    FactRule("call_me", _compile(rf"\bcall\s+me\s+({_NAME}){_NAME_END}"), _own_name),
    FactRule("i_am_name", _compile(r"\b(?:i['’]m|i\s+am)\s+((?-i:[A-Z])[a-zA-Z]+)(?=\.|,|!|$|\s+and\b|\s+but\b)"), _own_name),
    # Location
    FactRule(
        "live_in",
        _compile(r"\bi\s+(?:live|reside)\s+in\s+((?-i:[A-Z])[a-zA-Z\s,]+?)(?=\.|!|\?|$|\s+and\b|\s+but\b)"),
        _location,
    ),
    FactRule(
        "from_place",
        _compile(r"\b(?:i['’]m|i\s+am)\s+from\s+((?-i:[A-Z])[a-zA-Z\s,]+?)(?=\.|!|\?|$|\s+and\b|\s+but\b)"),
        _location,
    ),
    # Work
    FactRule(
        "work_at",
        _compile(r"\bi\s+work\s+(?:at|for)\s+([a-zA-Z0-9&\s]+?)(?=\.|,|!|$|\s+as\b|\s+and\b|\s+but\b)"),
        _employer,
    ),
    FactRule(
        "work_as",
        _compile(r"\bi\s+work\s+as\s+(an?\s+[a-zA-Z\s]+?)(?=\.|,|!|$|\s+at\b|\s+and\b|\s+but\b)"),
        _occupation,
    ),
    FactRule(
        "i_am_a",
        _compile(r"\b(?:i['’]m|i\s+am)\s+(an?\s+[a-zA-Z\s]+?)(?=\.|,|!|$|\s+at\b|\s+and\b|\s+but\b)"),
        _occupation,
    ),
    # Birthday and age
    FactRule(
        "birthday",
        _compile(r"\bmy\s+birthday\s+is\s+(?:on\s+)?([a-zA-Z]+\s+\d{1,2}(?:st|nd|rd|th)?(?:,?\s+\d{4})?)"),
        _birthday,
    ),
    FactRule("born_on", _compile(r"\bi\s+was\s+born\s+on\s+([a-zA-Z]+\s+\d{1,2}(?:st|nd|rd|th)?(?:,?\s+\d{4})?)"), _birthday),
    FactRule("age", _compile(r"\b(?:i['’]m|i\s+am)\s+(\d{1,3})\s+years?\s+old\b"), _age),
    # Pets
    FactRule(
        "pet",
        _compile(rf"\bi\s+have\s+an?\s+({_PETS})\b(?:\s+(?:named|called)\s+((?-i:[A-Z])[a-zA-Z]*))?"),
        _pet,
    ),
    # Preferences
    FactRule(
        "favorite",
        _compile(r"\bmy\s+favou?rite\s+([a-zA-Z]+)\s+is\s+([a-zA-Z0-9\s']+?)(?=\.|,|!|$|\s+and\b|\s+but\b)"),
        _favorite,
        applies=_mentions_preference,
    ),
    FactRule(
        "likes",
        _compile(r"\bi\s+(?:really\s+)?(?:love|like|prefer|enjoy)\s+([a-zA-Z\s]+?)(?=\.|,|!|$|\s+and\b|\s+but\b|\s+because\b)"),
        _likes,
        applies=_mentions_preference,
    ),
]


def extract_facts(message: str, rules: Optional[List[FactRule]] = None) -> List[ExtractedFact]:
    """
    Extract facts from a user message.

    Returns facts in rule order, then text order. Identical fact strings
    produced by different rules or matches are emitted once.
    """
    if not message:
        return []

    padded = f" {message.lower()} "
    seen = set()
    facts: List[ExtractedFact] = []

    for rule in rules or FACT_RULES:
        if rule.applies is not None and not rule.applies(padded):
            continue
        for match in rule.pattern.finditer(message):
            fact = rule.build(match)
            if fact is None or fact.fact in seen:
                continue
            seen.add(fact.fact)
            facts.append(fact)

    return facts
