import pytest

from verifolio_chat.retry import refusal_reason, should_retry


@pytest.mark.parametrize(
    "text",
    [
        "Je ne peux pas créer cette facture sans client",
        "Désolé, je ne suis pas en mesure de le faire.",
        "Je n'ai pas accès aux factures.",
        "Je n’ai pas trouvé ce client.",
        "Je n'ai pas d'information sur ce client.",
        "Il est impossible de retrouver ce devis.",
        "Aucune donnée disponible pour cette période.",
        "Il n'y a pas de données pour ce mois.",
        "Je ne dispose pas de cette information.",
        "Aucune facture n'est enregistrée pour ce client.",
        "I cannot create that invoice.",
        "I don't have access to your clients.",
        "There is no such invoice recorded.",
    ],
)
def test_refusals_trigger_retry(text):
    assert should_retry(text)


@pytest.mark.parametrize(
    "text",
    [
        "Voulez-vous que je crée la facture ?",
        "Je vais créer le devis.",
        "Vous devriez relancer ce client.",
        "Il semble que le client n'ait pas d'email.",
        "Facture FAC-2025-042 créée (3 000 €). L'envoyer ?",
        "Souhaitez-vous lister vos devis ?",
        "Je peux vérifier pour vous.",
        "",
        None,
    ],
)
def test_normal_answers_do_not_trigger_retry(text):
    assert not should_retry(text)


def test_reason_names_the_matching_pattern():
    assert refusal_reason("Je ne peux pas faire ça") == "cannot"
    assert refusal_reason("I don't have access to that") == "en_no_access"
    assert refusal_reason("Tout est prêt.") is None
