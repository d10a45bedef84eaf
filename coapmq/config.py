import logging
import os
from dotenv import load_dotenv

load_dotenv()

COAP_HOST = os.getenv("COAP_HOST", "0.0.0.0")
COAP_PORT = int(os.getenv("COAP_PORT", "5683"))

HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = int(os.getenv("HTTP_PORT", "8080"))
HTTP_ENABLED = os.getenv("HTTP_ENABLED", "1") == "1"

LOG_PACKET_TIMES = os.getenv("LOG_PACKET_TIMES", "0") == "1"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
if not isinstance(logging.getLevelName(LOG_LEVEL), int):
    LOG_LEVEL = "INFO"

# soft limit on live topics, only warned about
MAX_CHANNEL = int(os.getenv("MAX_CHANNEL", "1024"))
