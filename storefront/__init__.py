"""
Storefront: commandes et réconciliation des paiements (Stripe, bKash, Nagad).
L'application FastAPI est construite par storefront.app_setup.factory.create_app().
"""
