"""Canned replies used when no upstream API key is configured."""

_KEYWORD_REPLIES: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        ("client",),
        "Pour créer un client, j'ai besoin de son nom et de savoir s'il s'agit "
        "d'un particulier ou d'une entreprise. Quel est le nom du client ?",
    ),
    (
        ("devis",),
        "Pour créer un devis, j'ai besoin de connaître le client et les prestations "
        "à facturer. Pour quel client souhaitez-vous créer ce devis ?",
    ),
    (
        ("facture",),
        "Pour créer une facture, j'ai besoin de connaître le client et les prestations. "
        "Souhaitez-vous créer une facture à partir d'un devis existant ou une nouvelle facture ?",
    ),
    (
        ("envoyer", "email"),
        "Pour envoyer un document par email, précisez le numéro du devis ou de la facture. "
        "Je vous demanderai confirmation avant l'envoi.",
    ),
    (
        ("payé", "payer"),
        "Quelle facture souhaitez-vous marquer comme payée ? Donnez-moi le numéro de facture.",
    ),
    (
        ("convertir",),
        "Quel devis souhaitez-vous convertir en facture ? Donnez-moi le numéro du devis.",
    ),
    (
        ("liste", "lister", "voir"),
        "Que souhaitez-vous voir ? Je peux vous montrer la liste des clients, des devis, "
        "ou des factures.",
    ),
)

DEFAULT_REPLY = (
    "Je suis Verifolio, votre assistant facturation. Je peux vous aider à :\n"
    "• Créer et gérer des clients\n"
    "• Créer des devis\n"
    "• Créer des factures\n"
    "• Convertir des devis en factures\n"
    "• Envoyer des documents par email\n"
    "• Marquer des factures comme payées\n"
    "• Consulter vos statistiques financières\n\n"
    "Que souhaitez-vous faire ?"
)


def offline_reply(message: str) -> str:
    """First keyword group found in ``message`` wins; checked in table order."""
    lowered = message.lower()
    for keywords, reply in _KEYWORD_REPLIES:
        if any(keyword in lowered for keyword in keywords):
            return reply
    return DEFAULT_REPLY
