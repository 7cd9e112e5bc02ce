# module boutique.app
"""
Instance FastAPI unique de la boutique, construite par la factory.
Toute la configuration (middlewares, exceptions, routers, lifespan) vit dans boutique.app_setup.
"""
from boutique.app_setup.factory import create_app

app = create_app()
