import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables in priority order:
# 1. backend/.env (lowest priority)
# 2. repo_root/.env (overrides backend)
# 3. repo_root/.env.local (highest priority - overrides everything)
repo_root = Path(__file__).parent.parent
env_local = repo_root / ".env.local"
env_file = repo_root / ".env"
backend_env = Path(__file__).parent / ".env"

if backend_env.exists():
    load_dotenv(dotenv_path=backend_env, override=False)
if env_file.exists():
    load_dotenv(dotenv_path=env_file, override=True)
if env_local.exists():
    load_dotenv(dotenv_path=env_local, override=True)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


# Semantic oracle (OpenAI) credentials
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")

# -----------------------------------------------------------------------------
# Oracle behaviour
# -----------------------------------------------------------------------------
# Hard ceiling on how long any single oracle call may block the pipeline.
ORACLE_TIMEOUT_SECONDS = float(os.getenv("ORACLE_TIMEOUT_SECONDS", "20"))
# Concept extraction during parse is opt-in (one extra model call per parse).
ENABLE_ORACLE_CONCEPTS = _env_flag("ENABLE_ORACLE_CONCEPTS", "false")
ENABLE_ORACLE_FRAGMENTS = _env_flag("ENABLE_ORACLE_FRAGMENTS", "true")

# -----------------------------------------------------------------------------
# Fragment extraction
# -----------------------------------------------------------------------------
DEFAULT_FRAGMENTS = int(os.getenv("DEFAULT_FRAGMENTS", "10"))
MAX_FRAGMENTS = int(os.getenv("MAX_FRAGMENTS", "20"))

# -----------------------------------------------------------------------------
# Deterministic concept extraction
# -----------------------------------------------------------------------------
CONCEPT_MIN_NODES = int(os.getenv("CONCEPT_MIN_NODES", "2"))
CONCEPT_MAX_TERMS = int(os.getenv("CONCEPT_MAX_TERMS", "10"))

# -----------------------------------------------------------------------------
# Storage collaborator
# -----------------------------------------------------------------------------
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory").lower()  # "memory" or "sqlite"
FLOAT_AST_DB_PATH = os.getenv(
    "FLOAT_AST_DB_PATH", os.path.join(os.path.dirname(__file__), "float_ast.db")
)

# JSONL event logs (extraction paths, oracle degrades)
EVENT_LOG_DIR = os.getenv("EVENT_LOG_DIR", os.path.join(os.path.dirname(__file__), "logs"))

# -----------------------------------------------------------------------------
# HTTP surface
# -----------------------------------------------------------------------------
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173",
    ).split(",")
    if origin.strip()
]
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("PORT", "8000"))
