"""
Taxonomie des erreurs métier du storefront.
- Chaque erreur porte un status_code HTTP; app_setup.exceptions les rend en JSON {"detail": ...}.
- StaleTransition, EventAlreadyProcessed et DuplicateOrderNumber sont internes:
  elles sont absorbées par le moteur de réconciliation ou la factory et ne sortent jamais en HTTP.
"""


class StorefrontError(Exception):
    status_code = 500
    detail = "Erreur interne"
    retryable = False

    def __init__(self, detail: str | None = None):
        self.detail = detail or type(self).detail
        super().__init__(self.detail)


class ValidationError(StorefrontError):
    status_code = 400
    detail = "Requête invalide"


class InvalidSignature(StorefrontError):
    status_code = 400
    detail = "Signature invalide"


class OrderNotFound(StorefrontError):
    status_code = 404
    detail = "Commande introuvable"


class UnknownProvider(StorefrontError):
    status_code = 404
    detail = "Moyen de paiement inconnu"


class IntentConflict(StorefrontError):
    status_code = 409
    detail = "La commande n'est plus en attente de paiement"


class RefundNotAllowed(StorefrontError):
    status_code = 409
    detail = "Remboursement impossible dans l'état actuel de la commande"


class FulfilmentNotAllowed(StorefrontError):
    status_code = 409
    detail = "Étape d'expédition impossible dans l'état actuel de la commande"


class NoChargeToRefund(StorefrontError):
    status_code = 409
    detail = "Aucun débit à rembourser"


class RefundNotSupported(StorefrontError):
    status_code = 400
    detail = "Remboursement non supporté par ce moyen de paiement"


class ProviderUnavailable(StorefrontError):
    status_code = 503
    detail = "Prestataire de paiement indisponible"
    retryable = True


class OrderNumberExhausted(StorefrontError):
    status_code = 503
    detail = "Impossible d'attribuer un numéro de commande, réessayez"
    retryable = True


class StoreUnavailable(StorefrontError):
    status_code = 503
    detail = "Stockage des commandes indisponible"
    retryable = True


class StaleTransition(StorefrontError):
    """L'état observé a changé entre la lecture et l'écriture conditionnelle."""
    status_code = 409
    detail = "Transition obsolète"


class EventAlreadyProcessed(StorefrontError):
    status_code = 200
    detail = "Événement déjà appliqué"


class DuplicateOrderNumber(StorefrontError):
    status_code = 409
    detail = "Numéro de commande déjà utilisé"
