"""
Factory d’application pour les entrypoints (storefront.app, storefront.asgi).
Ordonne les étapes d’initialisation de manière lisible et testable.
"""
from fastapi import FastAPI
from .lifespan import lifespan
from .middlewares import register_basic_middlewares, register_security_middleware, register_force_https_middleware
from .exceptions import register_exception_handlers
from .routers import register_routers

def create_app() -> FastAPI:
    """
    Construit l’app FastAPI avec le lifespan et enregistre:
      1) middlewares de base (CORS, TrustedHost, proxy) puis en-têtes de sécurité
      2) gestionnaires d’exceptions (taxonomie métier + HTTPException)
      3) routers (orders, payments, webhooks, health)
      4) redirection HTTPS, ajoutée en dernier pour s’exécuter en premier
    """
    app = FastAPI(title="Storefront Orders & Payments API", lifespan=lifespan)
    register_basic_middlewares(app)
    register_security_middleware(app)
    register_exception_handlers(app)
    register_routers(app)
    register_force_https_middleware(app)
    return app
