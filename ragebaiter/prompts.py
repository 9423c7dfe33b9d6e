"""
Prompt Builders

Few-shot calibrated prompts for the two analysis phases. Prompt text is
a pure function of its inputs: identical input always yields a
byte-identical prompt.
"""

from __future__ import annotations

import json

from ragebaiter.models import Phase1Analysis


# ============================================================
# FEW-SHOT CALIBRATION
# ============================================================

FEW_SHOT_EXAMPLES = (
    {
        "input": "Either we slash taxes immediately or small businesses will die tomorrow.",
        "output": {
            "tweet_vector": {"social": 0.1, "economic": 0.7, "populist": 0.1},
            "fallacies": ["False Dilemma"],
            "topic": "Tax Policy",
            "confidence": 0.81,
        },
    },
    {
        "input": (
            "The career politicians in Washington have never worked a real job. "
            "Ordinary people know what's best, not the so-called experts who got us "
            "into this mess. Everyone I talk to agrees."
        ),
        "output": {
            "tweet_vector": {"social": 0.2, "economic": 0.0, "populist": 0.9},
            "fallacies": ["Ad Hominem", "Bandwagon", "Hasty Generalization"],
            "topic": "Anti-Establishment Politics",
            "confidence": 0.87,
        },
    },
    {
        "input": (
            "If we allow this one zoning change, next they'll ban single-family homes "
            "and force everyone into government housing blocks."
        ),
        "output": {
            "tweet_vector": {"social": 0.4, "economic": 0.5, "populist": 0.3},
            "fallacies": ["Slippery Slope", "Appeal to Emotion"],
            "topic": "Housing Policy",
            "confidence": 0.78,
        },
    },
)

PHASE1_SCHEMA = '{"tweet_vector":{"social":0,"economic":0,"populist":0},"fallacies":[""],"topic":"","confidence":0}'

PHASE2_SCHEMA = (
    '{"counterArgument":"","logicFailure":"","claim":"","mechanism":"",'
    '"dataCheck":"","socraticChallenge":""}'
)

PHASE2_SYSTEM_INSTRUCTION = (
    "You are a rigorous political argument analyst. "
    "Respond with only a valid JSON object matching the requested schema."
)


def truncate_deterministically(value: str, max_chars: int) -> str:
    """Keep the first max_chars characters. No sampling, no ellipsis."""
    if len(value) <= max_chars:
        return value
    return value[:max_chars]


def _render_examples() -> str:
    blocks = []
    for index, example in enumerate(FEW_SHOT_EXAMPLES, start=1):
        blocks.append("\n".join([
            f"Example {index} input:",
            example["input"],
            f"Example {index} output JSON:",
            json.dumps(example["output"], separators=(",", ":")),
        ]))
    return "\n\n".join(blocks)


def build_phase1_prompt(text: str) -> str:
    return "\n\n".join([
        "You are a political tweet analyzer that detects logical fallacies and manipulative framing.",
        "Return only JSON with this exact shape and keys:",
        PHASE1_SCHEMA,
        "Rules:",
        "- tweet_vector fields are numbers in [-1, 1]",
        "- confidence is a number in [0, 1]",
        "- fallacies is an array of short strings naming specific logical fallacies",
        "- topic is a concise string",
        "- no markdown, no prose, no code fences",
        "- best effort for non-English text",
        _render_examples(),
        "Analyze this tweet text:",
        text,
    ])


def build_phase2_prompt(text: str, phase1: Phase1Analysis) -> str:
    vector = phase1.vector
    return "\n".join([
        "You are Phase 2 in a two-phase political tweet analysis pipeline.",
        "Phase 1 context is provided for grounding only. Do not repeat Phase 1 vector or fallacies in output.",
        "Return only JSON with this exact shape and keys:",
        PHASE2_SCHEMA,
        "Rules:",
        "- counterArgument: 2-3 concise sentences rebutting the tweet's core claim with evidence-based reasoning",
        "- logicFailure: short label for the primary logical failure",
        "- claim: extract the main factual claim as directly as possible",
        "- mechanism: 2-3 sentences explaining how the argument manipulates framing or inference",
        "- dataCheck: 2-3 sentences with concrete checks, evidence patterns, or known empirical caveats",
        "- socraticChallenge: one pointed question that exposes the key gap in reasoning",
        "- no markdown, no code fences, no extra keys",
        "",
        "Phase 1 context:",
        f"- tweetVector.social: {vector.social}",
        f"- tweetVector.economic: {vector.economic}",
        f"- tweetVector.populist: {vector.populist}",
        f"- fallacies: {', '.join(phase1.fallacies)}",
        f"- topic: {phase1.topic}",
        f"- confidence: {phase1.confidence}",
        "",
        "Tweet text:",
        text,
    ])
