import os

wsgi_app = "app:app"

# Bind to the platform's injected PORT without relying on shell expansion.
port = os.getenv("PORT", "8000")
bind = f"0.0.0.0:{port}"

workers = int(os.getenv("WEB_CONCURRENCY", "2"))
threads = int(os.getenv("GUNICORN_THREADS", "1"))
# Gateway calls can take up to GATEWAY_TIMEOUT seconds.
timeout = int(os.getenv("GUNICORN_TIMEOUT", "45"))
loglevel = os.getenv("LOG_LEVEL", "info").lower()
accesslog = "-"
