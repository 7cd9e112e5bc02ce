"""
Registre central des routers.
- Checkout: commandes, paiement, statut
- Webhooks: stripe, paytech, nexpay
- Health: liveness, Supabase, file de tâches
"""
from fastapi import FastAPI
from boutique.checkout import views as checkout_views
from boutique.webhooks import views as webhooks_views
from boutique.health.router import router as health_router

def register_routers(app: FastAPI) -> None:
    app.include_router(checkout_views.router)
    app.include_router(webhooks_views.router)
    # Health & monitoring
    app.include_router(health_router)
