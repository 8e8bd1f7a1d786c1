"""Side-channel signals pulled out of tool results.

Three independent pieces: the created-entity descriptor recovered from a
mutating tool's result message, the tab-to-open directive carried in a
result payload, and the human-readable working-step label of a call.
"""

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Mapping

# Entity type the UI should refresh after a successful call.
TOOL_ENTITY_TYPES: Mapping[str, str] = MappingProxyType({
    "create_client": "clients",
    "create_contact": "contacts",
    "create_deal": "deals",
    "update_deal_status": "deals",
    "create_mission": "missions",
    "update_mission_status": "missions",
    "create_quote": "quotes",
    "create_invoice": "invoices",
    "convert_quote_to_invoice": "invoices",
    "mark_invoice_paid": "invoices",
    "create_proposal": "proposals",
    "set_proposal_status": "proposals",
    "create_brief": "briefs",
    "send_brief": "briefs",
    "create_review_request": "reviews",
})

DEFAULT_TITLE = "Sans titre"

_UUID_RE = re.compile(
    r"[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}",
    re.IGNORECASE,
)
_CLIENT_NAME_RES = (
    re.compile(r"Client\s+[\"“«]?([^\"”»\n]+?)[\"”»]?\s+créé", re.IGNORECASE),
    re.compile(r"créé.*?:\s*([^(\n]+)", re.IGNORECASE),
)
_QUOTE_NUMBER_RE = re.compile(r"(?:Devis\s+)?([A-Z]{2,4}-\d{2,4}(?:-\d{2})?)", re.IGNORECASE)
_INVOICE_NUMBER_RE = re.compile(r"(?:Facture\s+)?([A-Z]{2,4}-\d{2,4}(?:-\d{2})?)", re.IGNORECASE)
_QUOTED_TITLE_RE = re.compile(r"[\"“«]([^\"”»\n]+)[\"”»]")


@dataclass(frozen=True)
class CreatedEntity:
    type: str
    id: str
    title: str

    def to_json(self) -> dict[str, str]:
        return {"type": self.type, "id": self.id, "title": self.title}


@dataclass(frozen=True)
class TabToOpen:
    type: str
    path: str
    title: str
    entity_id: str

    def to_json(self) -> dict[str, str]:
        return {
            "type": self.type,
            "path": self.path,
            "title": self.title,
            "entityId": self.entity_id,
        }


# ── Entity titles ────────────────────────────────────────────────────


def _client_title(message: str) -> str | None:
    for pattern in _CLIENT_NAME_RES:
        match = pattern.search(message)
        if match:
            return match.group(1).strip()
    return None


def _number_title(pattern: re.Pattern[str]) -> Callable[[str], str | None]:
    def extract(message: str) -> str | None:
        # Skip matches that are only a fragment of the UUID itself.
        without_ids = _UUID_RE.sub(" ", message)
        match = pattern.search(without_ids)
        return match.group(1) if match else None

    return extract


def _quoted_title(message: str) -> str | None:
    match = _QUOTED_TITLE_RE.search(message)
    return match.group(1) if match else None


_TITLE_EXTRACTORS: Mapping[str, Callable[[str], str | None]] = MappingProxyType({
    "create_client": _client_title,
    "create_quote": _number_title(_QUOTE_NUMBER_RE),
    "create_invoice": _number_title(_INVOICE_NUMBER_RE),
    "convert_quote_to_invoice": _number_title(_INVOICE_NUMBER_RE),
    "create_deal": _quoted_title,
    "create_mission": _quoted_title,
    "create_proposal": _quoted_title,
})


def extract_entity_title(tool_name: str, message: str) -> str:
    """Human title for the entity named in ``message``, or ``Sans titre``."""
    extractor = _TITLE_EXTRACTORS.get(tool_name)
    if extractor is None:
        return DEFAULT_TITLE
    return extractor(message) or DEFAULT_TITLE


def extract_created_entity(tool_name: str, message: str) -> CreatedEntity | None:
    """Created/updated entity descriptor, or ``None`` if nothing usable is found.

    Requires a UUID in the message; the title falls back to ``Sans titre``.
    """
    entity_type = TOOL_ENTITY_TYPES.get(tool_name)
    if entity_type is None or not message:
        return None
    match = _UUID_RE.search(message)
    if not match:
        return None
    return CreatedEntity(
        type=entity_type,
        id=match.group(0),
        title=extract_entity_title(tool_name, message),
    )


# ── Tabs ─────────────────────────────────────────────────────────────


def extract_tab(data: Any) -> TabToOpen | None:
    """Tab directive from a result payload ``{"action": "open_tab", "tab": {...}}``."""
    if not isinstance(data, dict) or data.get("action") != "open_tab":
        return None
    tab = data.get("tab")
    if not isinstance(tab, dict):
        return None
    return TabToOpen(
        type=str(tab.get("type", "")),
        path=str(tab.get("path", "")),
        title=str(tab.get("title", "")),
        entity_id=str(tab.get("entityId", "")),
    )


# ── Working-step labels ──────────────────────────────────────────────

TOOL_LABELS: Mapping[str, str] = MappingProxyType({
    # Lecture
    "list_clients": "Charger les clients",
    "list_contacts": "Charger les contacts",
    "get_contact_for_context": "Charger le contact",
    "list_quotes": "Charger les devis",
    "list_invoices": "Charger les factures",
    "list_proposals": "Charger les propositions",
    "get_proposal_public_link": "Récupérer le lien de la proposition",
    "list_deals": "Charger les deals",
    "get_deal": "Charger le deal",
    "list_missions": "Charger les missions",
    "get_mission": "Charger la mission",
    "list_briefs": "Charger les briefs",
    "list_reviews": "Charger les avis",
    "list_review_requests": "Charger les demandes d'avis",
    "list_payments": "Charger les paiements",
    "get_entity_tasks": "Charger les tâches",
    "get_financial_summary": "Charger le résumé financier",
    "get_company_settings": "Charger les paramètres",
    "open_tab": "Ouvrir l'onglet",
    # Création
    "create_client": "Créer le client",
    "create_contact": "Créer le contact",
    "create_quote": "Créer le devis",
    "create_invoice": "Créer la facture",
    "create_proposal": "Créer la proposition",
    "create_deal": "Créer le deal",
    "create_mission": "Créer la mission",
    "create_brief": "Créer le brief",
    "create_payment": "Enregistrer le paiement",
    "create_review_request": "Créer la demande d'avis",
    # Modification
    "update_client": "Mettre à jour le client",
    "update_quote_status": "Changer le statut du devis",
    "update_invoice_status": "Changer le statut de la facture",
    "update_deal_status": "Changer le statut du deal",
    "update_mission_status": "Changer le statut de la mission",
    "set_proposal_status": "Changer le statut",
    # Actions
    "send_email": "Envoyer l'email",
    "send_brief": "Envoyer le brief",
    "mark_invoice_paid": "Marquer comme payée",
    "convert_quote_to_invoice": "Convertir en facture",
})


def _format_amount(amount: Any) -> str:
    if isinstance(amount, float) and amount.is_integer():
        return str(int(amount))
    return str(amount)


def step_label(tool_name: str, arguments: Mapping[str, Any] | None = None) -> str:
    """User-facing label for one tool call, enriched from its arguments."""
    label = TOOL_LABELS.get(tool_name) or tool_name.replace("_", " ")
    if not arguments:
        return label

    client_name = arguments.get("client_name")
    if client_name:
        label = label.replace("le client", str(client_name), 1)
        label = label.replace("les clients", str(client_name), 1)
    amount = arguments.get("amount")
    if amount:
        label += f" de {_format_amount(amount)} €"
    name = arguments.get("name")
    if name:
        label += f' "{name}"'
    return label
