# backend/wsgi.py
from kindplate import create_app

app = create_app()
