"""
Serverless entry point for the Ticket Lifecycle Engine API.

Background jobs are driven by the platform scheduler through /cron.
"""
import sys
import os

# Add parent directory to path
parent_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if parent_dir not in sys.path:
    sys.path.insert(0, parent_dir)

# Set environment variables for serverless
os.environ.setdefault("ENVIRONMENT", "production")
os.environ.setdefault("ENABLE_BACKGROUND_JOBS", "false")
os.environ.setdefault("ESCALATION_CONFIG_PATH", os.path.join(parent_dir, "escalation_config.yaml"))

from mangum import Mangum
from src.infrastructure.database import init_database
from src.main import app

# Lifespan is off, so the engine is created at import time
init_database()

handler = Mangum(app, lifespan="off")
