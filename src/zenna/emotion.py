"""
Lexical emotion classification of assistant responses.

The label drives the client's avatar expression. Classification is pure:
each rule contributes (number of pattern matches x weight) to its label,
the highest score wins, and ties go to the label declared first in
``EmotionLabel``. Scores below ``CONFIDENCE_THRESHOLD`` fall back to a
length/pronoun heuristic instead.
"""
import re
from dataclasses import dataclass
from enum import Enum
from re import Pattern
from typing import Dict, List, Tuple


class EmotionLabel(str, Enum):
    # Primary emotions
    JOY = "joy"
    TRUST = "trust"
    FEAR = "fear"
    SURPRISE = "surprise"
    SADNESS = "sadness"
    ANTICIPATION = "anticipation"
    ANGER = "anger"
    DISGUST = "disgust"
    NEUTRAL = "neutral"
    # Companion states
    CURIOUS = "curious"
    HELPFUL = "helpful"
    EMPATHETIC = "empathetic"
    THOUGHTFUL = "thoughtful"
    ENCOURAGING = "encouraging"
    CALMING = "calming"
    FOCUSED = "focused"


CONFIDENCE_THRESHOLD = 0.5
LONG_RESPONSE_CHARS = 100


@dataclass(frozen=True)
class EmotionRule:
    label: EmotionLabel
    patterns: Tuple[Pattern, ...]
    weight: float


def _rule(label: EmotionLabel, weight: float, *patterns: str) -> EmotionRule:
    return EmotionRule(label, tuple(re.compile(p, re.IGNORECASE) for p in patterns), weight)


EMOTION_RULES: List[EmotionRule] = [
    _rule(EmotionLabel.JOY, 1.2,
          r"\b(happy|glad|delighted|excited|wonderful|fantastic|amazing|great news|congratulations|celebrate|joy|yay|awesome|excellent)\b"),
    _rule(EmotionLabel.TRUST, 1.0,
          r"\b(you can count on me|rely on|trust me|i've got you|you have my word)\b"),
    _rule(EmotionLabel.FEAR, 1.1,
          r"\b(afraid|scared|frightening|alarming|be careful|danger(?:ous)?)\b"),
    _rule(EmotionLabel.SURPRISE, 1.1,
          r"\b(wow|whoa|no way|how surprising|unexpected|i didn't expect)\b"),
    _rule(EmotionLabel.SADNESS, 1.1,
          r"\b(so sad|heartbreaking|unfortunately|i'm sad|that's sad|grief|mourning)\b"),
    _rule(EmotionLabel.ANTICIPATION, 1.0,
          r"\b(can't wait|looking forward|coming up|soon|excited to see)\b"),
    _rule(EmotionLabel.ANGER, 1.0,
          r"\b(unacceptable|outrageous|infuriating|furious)\b"),
    _rule(EmotionLabel.DISGUST, 1.0,
          r"\b(disgusting|gross|revolting)\b"),
    _rule(EmotionLabel.CURIOUS, 1.1,
          r"\b(interesting|fascinating|intriguing|wonder|curious|explore|discover)\b",
          r"\?\s*$"),
    _rule(EmotionLabel.HELPFUL, 1.3,
          r"\b(here's how|let me help|i can assist|steps to|guide you|help you|show you how|explain)\b",
          r"\d+\.\s+"),
    _rule(EmotionLabel.EMPATHETIC, 1.2,
          r"\b(understand|feel|hear you|acknowledge|appreciate|that must be|sounds like)\b"),
    _rule(EmotionLabel.THOUGHTFUL, 1.0,
          r"\b(consider|reflect|think about|perspective|nuanced|complex|depends|however)\b"),
    _rule(EmotionLabel.ENCOURAGING, 1.2,
          r"\b(you can do|believe in|great job|well done|keep going|proud|progress)\b"),
    _rule(EmotionLabel.CALMING, 1.1,
          r"\b(relax|calm|peace|gentle|easy|no rush|take your time|no worries)\b"),
    _rule(EmotionLabel.FOCUSED, 1.0,
          r"\b(specifically|precisely|exactly|detail|focus|important|key point|critical)\b"),
]

_PRONOUNS = re.compile(r"\b(here|this|that|you|your)\b", re.IGNORECASE)

_DECLARATION_ORDER = {label: index for index, label in enumerate(EmotionLabel)}


def score_emotions(text: str, rules: List[EmotionRule] = EMOTION_RULES) -> Dict[EmotionLabel, float]:
    """Raw score per label; labels with no rule score 0."""
    scores = {label: 0.0 for label in EmotionLabel}
    for rule in rules:
        matches = sum(len(pattern.findall(text)) for pattern in rule.patterns)
        scores[rule.label] += matches * rule.weight
    return scores


def fallback_emotion(text: str) -> EmotionLabel:
    """Label for responses no rule scored confidently."""
    if len(text) > LONG_RESPONSE_CHARS or _PRONOUNS.search(text):
        return EmotionLabel.HELPFUL
    return EmotionLabel.NEUTRAL


def classify_emotion(text: str) -> EmotionLabel:
    """Classify an assistant response into exactly one label."""
    scores = score_emotions(text)

    best_label = EmotionLabel.NEUTRAL
    best_score = 0.0
    for label in sorted(scores, key=_DECLARATION_ORDER.__getitem__):
        if scores[label] > best_score:
            best_label, best_score = label, scores[label]

    if best_score < CONFIDENCE_THRESHOLD:
        return fallback_emotion(text)
    return best_label
