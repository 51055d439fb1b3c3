# backend/wsgi.py
from orderledger import create_app

app = create_app()
