import logging
import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


config = {
    'groq_api_key': os.getenv('GROQ_API_KEY'),
    'model': os.getenv('GROQ_MODEL', 'llama-3.3-70b-versatile'),
    'temperature': float(os.getenv('GROQ_TEMPERATURE', 0.2)),
    'max_tokens': int(os.getenv('GROQ_MAX_TOKENS', 2048)),
    'timeout': int(os.getenv('GROQ_TIMEOUT', 30)),
    'quick_reject_threshold': float(os.getenv('TASK_QUICK_REJECT', 0.3)),
    'quick_accept_threshold': float(os.getenv('TASK_QUICK_ACCEPT', 0.9)),
    'cluster_threshold': float(os.getenv('TASK_CLUSTER_THRESHOLD', 0.8)),
    'batch_size': int(os.getenv('TASK_BATCH_SIZE', 5)),
    'escalate_dependents': _env_bool('TASK_ESCALATE_DEPENDENTS', True),
    'db_path': os.getenv('TASK_ENGINE_DB_PATH', 'tasks.db'),
    'log_level': os.getenv('TASK_ENGINE_LOG_LEVEL', 'INFO'),
}


def configure_logging(level=None) -> None:
    """Attach a single stream handler to the root logger (scripts only)."""
    logging.basicConfig(
        level=level or config['log_level'],
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
