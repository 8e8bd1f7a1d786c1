"""Detect answers where the model declined to act instead of calling a tool.

Only genuine capability refusals count. Advice, clarifying questions and
announced intent ("Je vais créer le devis.") are normal answers.
"""

import re

REFUSAL_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("cannot", re.compile(r"\bje ne (?:peux|suis) pas\b", re.IGNORECASE)),
    ("no_access", re.compile(r"\bpas accès aux?\b", re.IGNORECASE)),
    ("no_information", re.compile(r"\bpas d['’]informations?\b", re.IGNORECASE)),
    ("impossible", re.compile(r"\bimpossible de\b", re.IGNORECASE)),
    ("no_data", re.compile(r"\baucune donnée\b", re.IGNORECASE)),
    ("have_not", re.compile(r"\bje n['’]ai pas\b", re.IGNORECASE)),
    ("no_data_plural", re.compile(r"\bpas de données\b", re.IGNORECASE)),
    ("not_available", re.compile(r"\bne dispose pas\b", re.IGNORECASE)),
    ("no_invoice_recorded", re.compile(r"\baucune facture\b.*\benregistr", re.IGNORECASE | re.DOTALL)),
    ("en_cannot", re.compile(r"\bI (?:cannot|can['’]t|am unable to)\b", re.IGNORECASE)),
    ("en_no_access", re.compile(r"\bI (?:don['’]t|do not) have access to\b", re.IGNORECASE)),
    ("en_no_record", re.compile(r"\bno (?:such )?\w+ (?:was )?(?:recorded|on record)\b", re.IGNORECASE)),
)


def refusal_reason(text: str | None) -> str | None:
    """Name of the first refusal pattern found in ``text``, if any."""
    if not text:
        return None
    for label, pattern in REFUSAL_PATTERNS:
        if pattern.search(text):
            return label
    return None


def should_retry(text: str | None) -> bool:
    """Whether a tool-less answer should be retried with ``tool_choice=required``."""
    return refusal_reason(text) is not None
