# constants.py
import logging

logger = logging.getLogger(__name__)

# Constants
NEO4J_URI = "bolt://localhost:7687"
NEO4J_USER = "neo4j"
NEO4J_PASSWORD = "testpassword"

TARGET_URL = "http://the-agent-company.com:3000/"

DRIVER_PLAYWRIGHT = "chrome-playwright"
DRIVER_DOCKER_VNC = "ubuntu-docker-vnc"
DEFAULT_DRIVER = DRIVER_PLAYWRIGHT

STREAM_TIMEOUT_SECONDS = 60
MAX_TURNS_PER_ITEM = 15
FILLER_TURN_LIMIT = 2

SESSION_DIR = "./sessions"
OUTPUT_DIR = "./output"

VNC_CONTAINER_NAME = "factif-vnc"
VNC_IMAGE_NAME = "factif-ubuntu-vnc"
VNC_COMMAND_TIMEOUT = 30

DEFAULT_CONFIG = {
    'stream_timeout': STREAM_TIMEOUT_SECONDS,
    'max_turns_per_item': MAX_TURNS_PER_ITEM,
    'filler_turn_limit': FILLER_TURN_LIMIT,
    'dedupe_edges': True,
    'describe_pages': False,
    'save_screenshots': False,
    'same_domain_only': False,
    'output_dir': OUTPUT_DIR,
}
