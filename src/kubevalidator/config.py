import os
import dotenv
import logging

dotenv.load_dotenv()

GITHUB_WEBHOOK_SECRET = os.environ.get("GITHUB_WEBHOOK_SECRET")
GITHUB_PRIVATE_KEY = os.environ.get("GITHUB_PRIVATE_KEY")
GITHUB_APP_ID = int(os.environ.get("GITHUB_APP_ID", 0))

OVERRIDE_LOGGING = logging.getLevelName(os.environ.get("OVERRIDE_LOGGING", "INFO"))

TELEGRAM_TOKEN = os.environ.get("TELEGRAM_TOKEN")
TELEGRAM_CHAT_ID = os.environ.get("TELEGRAM_CHAT_ID")

CHECK_RUN_NAME = os.environ.get("CHECK_RUN_NAME", "kubevalidator")

CONFIG_FILE_PATH = os.environ.get("CONFIG_FILE_PATH", ".github/kubevalidator.yaml")

# local file read instead of the repository config, for development
OVERRIDE_CONFIG = os.environ.get("OVERRIDE_CONFIG")

MARKETPLACE_THRESHOLD = int(os.environ.get("MARKETPLACE_THRESHOLD", 250))

# GitHub rejects more than 50 annotations per check run request
MAX_ANNOTATIONS = int(os.environ.get("MAX_ANNOTATIONS", 50))

# rows listed in the summary and overflow tables before eliding the rest
MAX_TABLE_ROWS = int(os.environ.get("MAX_TABLE_ROWS", 200))

ACCESS_TOKEN_TTL = float(os.environ.get("ACCESS_TOKEN_TTL", 300))

DISKCACHE_DIR = os.environ.get("DISKCACHE_DIR", ".kubevalidator-cache")

SUITE_GUARD_TTL = float(os.environ.get("SUITE_GUARD_TTL", 300))
