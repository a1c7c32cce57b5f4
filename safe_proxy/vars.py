import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "safe-proxy-site")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "info").lower()
