"""
asgi.py -- ASGI entry point for keyward.

The only module that calls create_app() at import time. Settings are read
from the environment / .env via get_settings() when this module is imported.

Run with:  uvicorn asgi:app --reload
           python main.py serve
"""

from api.main import create_app

app = create_app()
