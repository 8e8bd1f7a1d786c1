"""Known business tools: names, argument contracts and read-only flags.

The implementations live in the business API; this module only declares
what the model may ask for and which arguments each call must carry.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field


class ToolArguments(BaseModel):
    """Base for per-tool argument models. Unknown keys are dropped."""

    model_config = ConfigDict(extra="ignore")


class LineItem(BaseModel):
    description: str = Field(min_length=1)
    quantite: float
    prix_unitaire: float
    tva_rate: float | None = None


# ── Clients & contacts ───────────────────────────────────────────────


class CreateClientArgs(ToolArguments):
    type: Literal["particulier", "entreprise"]
    nom: str = Field(min_length=1)
    email: str | None = None
    telephone: str | None = None
    adresse: str | None = None
    custom_fields: dict[str, str] | None = None


class UpdateClientArgs(ToolArguments):
    client_id: str | None = None
    client_name: str | None = None
    email: str | None = None
    telephone: str | None = None
    adresse: str | None = None
    custom_fields: dict[str, str] | None = None


class ClientFilterArgs(ToolArguments):
    client_id: str | None = None
    client_name: str | None = None


class CreateContactArgs(ToolArguments):
    nom: str = Field(min_length=1)
    prenom: str | None = None
    email: str | None = None
    telephone: str | None = None
    notes: str | None = None


class NoArgs(ToolArguments):
    pass


# ── Quotes & invoices ────────────────────────────────────────────────


class CreateQuoteArgs(ToolArguments):
    client_id: str | None = None
    client_name: str | None = None
    deal_id: str | None = None
    items: list[LineItem] = Field(min_length=1)
    notes: str | None = None


class ListQuotesArgs(ToolArguments):
    status: Literal["brouillon", "envoye"] | None = None


class UpdateQuoteStatusArgs(ToolArguments):
    quote_id: str | None = None
    quote_numero: str | None = None
    status: Literal["brouillon", "envoye", "accepted", "refused"]


class CreateInvoiceArgs(ToolArguments):
    client_id: str | None = None
    client_name: str | None = None
    mission_id: str | None = None
    quote_id: str | None = None
    items: list[LineItem] = Field(min_length=1)
    notes: str | None = None


class ListInvoicesArgs(ToolArguments):
    numero: str | None = None
    status: Literal["brouillon", "envoyee", "payee"] | None = None


class UpdateInvoiceStatusArgs(ToolArguments):
    invoice_id: str | None = None
    invoice_numero: str | None = None
    status: Literal["brouillon", "envoyee", "payee", "annulee"]


class ConvertQuoteArgs(ToolArguments):
    quote_id: str | None = None
    quote_numero: str | None = None
    client_name: str | None = None


class InvoiceRefArgs(ToolArguments):
    invoice_id: str | None = None
    invoice_numero: str | None = None


class SendEmailArgs(ToolArguments):
    entity_type: Literal["quote", "invoice"]
    entity_id: str = Field(min_length=1)
    to_email: str = Field(min_length=3)


class FinancialSummaryArgs(ToolArguments):
    query_type: Literal["unpaid", "revenue", "by_client", "all"]
    client_name: str | None = None


class CreatePaymentArgs(ToolArguments):
    amount: float = Field(gt=0)
    invoice_id: str | None = None
    mission_id: str | None = None
    payment_date: str | None = None
    payment_method: str | None = None
    notes: str | None = None


class ListPaymentsArgs(ToolArguments):
    client_name: str | None = None
    invoice_id: str | None = None
    mission_id: str | None = None


# ── Proposals ────────────────────────────────────────────────────────


class CreateProposalArgs(ToolArguments):
    deal_id: str | None = None
    client_id: str | None = None
    client_name: str | None = None
    template_id: str | None = None
    template_name: str | None = None
    variables: dict[str, str] | None = None
    linked_quote_id: str | None = None


class SetProposalStatusArgs(ToolArguments):
    proposal_id: str = Field(min_length=1)
    status: Literal["draft", "sent"]


class ProposalRefArgs(ToolArguments):
    proposal_id: str = Field(min_length=1)


# ── Deals & missions ─────────────────────────────────────────────────

DealStatus = Literal["new", "draft", "sent", "won", "lost", "archived"]
MissionStatus = Literal["in_progress", "delivered", "to_invoice", "invoiced", "paid", "closed", "cancelled"]


class CreateDealArgs(ToolArguments):
    client_id: str | None = None
    client_name: str | None = None
    title: str = Field(min_length=1)
    description: str | None = None
    estimated_amount: float | None = None


class ListDealsArgs(ToolArguments):
    client_id: str | None = None
    client_name: str | None = None
    status: DealStatus | None = None


class DealRefArgs(ToolArguments):
    deal_id: str = Field(min_length=1)


class UpdateDealStatusArgs(ToolArguments):
    deal_id: str = Field(min_length=1)
    status: DealStatus


class CreateMissionArgs(ToolArguments):
    deal_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str | None = None
    estimated_amount: float | None = None


class ListMissionsArgs(ToolArguments):
    client_id: str | None = None
    client_name: str | None = None
    status: MissionStatus | None = None


class MissionRefArgs(ToolArguments):
    mission_id: str = Field(min_length=1)


class UpdateMissionStatusArgs(ToolArguments):
    mission_id: str = Field(min_length=1)
    status: MissionStatus


# ── Briefs, reviews, tasks ───────────────────────────────────────────


class CreateBriefArgs(ToolArguments):
    deal_id: str = Field(min_length=1)
    template_id: str | None = None
    template_name: str | None = None
    title: str = Field(min_length=1)


class ListBriefsArgs(ToolArguments):
    deal_id: str | None = None


class SendBriefArgs(ToolArguments):
    brief_id: str = Field(min_length=1)
    send_email: bool | None = None


class CreateReviewRequestArgs(ToolArguments):
    mission_id: str | None = None
    invoice_id: str | None = None
    title: str = Field(min_length=1)
    context_text: str | None = None


class EntityTasksArgs(ToolArguments):
    entity_type: Literal["deal", "mission", "client", "contact", "invoice"]
    entity_id: str | None = None
    entity_name: str | None = None


# ── UI navigation ────────────────────────────────────────────────────


class OpenTabArgs(ToolArguments):
    entity_type: Literal[
        "client", "invoice", "quote", "deal", "mission",
        "proposal", "brief", "contact", "supplier", "expense",
    ]
    entity_id: str = Field(min_length=1)
    title: str = Field(min_length=1)


@dataclass(frozen=True)
class ToolSpec:
    """Declaration of one tool the model may call."""

    name: str
    description: str
    arguments: type[ToolArguments]
    read_only: bool = False


CATALOG: tuple[ToolSpec, ...] = (
    # Read-only
    ToolSpec("list_clients", "Lister tous les clients.", NoArgs, read_only=True),
    ToolSpec("list_contacts", "Lister les contacts, éventuellement ceux d'un client.", ClientFilterArgs, read_only=True),
    ToolSpec("get_contact_for_context", "Trouver le bon contact d'un client pour un usage donné.", ClientFilterArgs, read_only=True),
    ToolSpec("list_quotes", "Lister les devis.", ListQuotesArgs, read_only=True),
    ToolSpec("list_invoices", "Lister les factures, par numéro ou statut.", ListInvoicesArgs, read_only=True),
    ToolSpec("get_financial_summary", "Résumé financier: impayés, chiffre d'affaires, par client.", FinancialSummaryArgs, read_only=True),
    ToolSpec("get_company_settings", "Lire les paramètres de l'entreprise.", NoArgs, read_only=True),
    ToolSpec("list_proposals", "Lister les propositions commerciales.", ClientFilterArgs, read_only=True),
    ToolSpec("get_proposal_public_link", "Obtenir le lien public d'une proposition.", ProposalRefArgs, read_only=True),
    ToolSpec("list_deals", "Lister les deals.", ListDealsArgs, read_only=True),
    ToolSpec("get_deal", "Détails d'un deal.", DealRefArgs, read_only=True),
    ToolSpec("list_missions", "Lister les missions.", ListMissionsArgs, read_only=True),
    ToolSpec("get_mission", "Détails d'une mission.", MissionRefArgs, read_only=True),
    ToolSpec("list_briefs", "Lister les briefs.", ListBriefsArgs, read_only=True),
    ToolSpec("list_reviews", "Lister les avis reçus.", NoArgs, read_only=True),
    ToolSpec("list_review_requests", "Lister les demandes d'avis.", NoArgs, read_only=True),
    ToolSpec("list_payments", "Lister les paiements.", ListPaymentsArgs, read_only=True),
    ToolSpec("get_entity_tasks", "Lister les tâches rattachées à une entité.", EntityTasksArgs, read_only=True),
    ToolSpec(
        "open_tab",
        "Ouvrir une entité dans un nouvel onglet de l'interface (ouvrir, afficher, consulter).",
        OpenTabArgs,
        read_only=True,
    ),
    # Mutating
    ToolSpec("create_client", "Créer un nouveau client.", CreateClientArgs),
    ToolSpec("update_client", "Modifier un client existant.", UpdateClientArgs),
    ToolSpec("create_contact", "Créer un contact.", CreateContactArgs),
    ToolSpec("create_quote", "Créer un devis avec ses lignes.", CreateQuoteArgs),
    ToolSpec("update_quote_status", "Changer le statut d'un devis.", UpdateQuoteStatusArgs),
    ToolSpec("create_invoice", "Créer une facture avec ses lignes.", CreateInvoiceArgs),
    ToolSpec("update_invoice_status", "Changer le statut d'une facture.", UpdateInvoiceStatusArgs),
    ToolSpec("convert_quote_to_invoice", "Convertir un devis en facture.", ConvertQuoteArgs),
    ToolSpec("mark_invoice_paid", "Marquer une facture comme payée.", InvoiceRefArgs),
    ToolSpec("send_email", "Envoyer un devis ou une facture par email.", SendEmailArgs),
    ToolSpec("create_payment", "Enregistrer un paiement.", CreatePaymentArgs),
    ToolSpec("create_proposal", "Créer une proposition commerciale.", CreateProposalArgs),
    ToolSpec("set_proposal_status", "Changer le statut d'une proposition.", SetProposalStatusArgs),
    ToolSpec("create_deal", "Créer un deal.", CreateDealArgs),
    ToolSpec("update_deal_status", "Changer le statut d'un deal.", UpdateDealStatusArgs),
    ToolSpec("create_mission", "Créer une mission rattachée à un deal.", CreateMissionArgs),
    ToolSpec("update_mission_status", "Changer le statut d'une mission.", UpdateMissionStatusArgs),
    ToolSpec("create_brief", "Créer un brief pour un deal.", CreateBriefArgs),
    ToolSpec("send_brief", "Envoyer un brief au client.", SendBriefArgs),
    ToolSpec("create_review_request", "Créer une demande d'avis client.", CreateReviewRequestArgs),
)

TOOL_SPECS: Mapping[str, ToolSpec] = MappingProxyType({spec.name: spec for spec in CATALOG})
READ_ONLY_TOOLS: frozenset[str] = frozenset(spec.name for spec in CATALOG if spec.read_only)
MUTATING_TOOLS: frozenset[str] = frozenset(spec.name for spec in CATALOG if not spec.read_only)


def _inline_refs(node: Any, defs: dict[str, Any]) -> Any:
    """Replace ``$ref`` pointers with their definitions."""
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/$defs/"):
            return _inline_refs(defs[ref.rsplit("/", 1)[-1]], defs)
        return {key: _inline_refs(value, defs) for key, value in node.items() if key != "$defs"}
    if isinstance(node, list):
        return [_inline_refs(item, defs) for item in node]
    return node


def json_schema(arguments: type[ToolArguments]) -> dict[str, Any]:
    """Self-contained JSON schema for an argument model."""
    schema = arguments.model_json_schema()
    return _inline_refs(schema, schema.get("$defs", {}))
