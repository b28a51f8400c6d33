import os
from pathlib import Path


APP_NAME = "gameserver-manager"
APP_VERSION = os.getenv("APP_VERSION", "0.2.0")

API_PORT = int(os.getenv("PORT", "3000"))
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()

# Containers carrying MANAGEMENT_LABEL=MANAGEMENT_LABEL_VALUE are the ones we own.
MANAGEMENT_LABEL = os.getenv("GS_MANAGEMENT_LABEL", "gs_manager")
MANAGEMENT_LABEL_VALUE = "1"
HOST_PORT_LABEL = f"{MANAGEMENT_LABEL}.host_port"
PRIMARY_PORT_LABEL = f"{MANAGEMENT_LABEL}.primary_port"
TEMPLATE_LABEL = f"{MANAGEMENT_LABEL}.template"

SERVERS_HOST_ROOT = Path(os.getenv("GS_SERVERS_HOST_ROOT", "/opt/games"))
SERVER_DATA_PATH = os.getenv("GS_SERVER_DATA_PATH", "/data")

MINECRAFT_PORT = 25565
MIN_HOST_PORT = 1024
MAX_HOST_PORT = 65535

LOG_TAIL_LINES = int(os.getenv("GS_LOG_TAIL", "200"))
WS_CHUNK_SIZE = int(os.getenv("GS_WS_CHUNK_SIZE", "120"))
PORT_RESERVATION_TTL = float(os.getenv("GS_PORT_RESERVATION_TTL", "60"))
CONSOLE_SHELL = os.getenv("GS_CONSOLE_SHELL", "/bin/sh")

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*")
