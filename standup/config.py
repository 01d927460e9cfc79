import os
from typing import Any, Optional

from dotenv import load_dotenv

from standup.errors import ConfigurationError

load_dotenv()

config = {
    'openai_api_key': os.getenv('OPENAI_API_KEY'),
    'groq_api_key': os.getenv('GROQ_API_KEY'),
    'model': os.getenv('LLM_MODEL'),
    'temperature': float(os.getenv('LLM_TEMPERATURE', 0.1)),
    'max_tokens': int(os.getenv('LLM_MAX_TOKENS', 2048)),
    'timeout': int(os.getenv('LLM_TIMEOUT', 30)),

    'embedding_backend': os.getenv('EMBEDDING_BACKEND', 'sentence-transformers'),
    'embedding_model': os.getenv('EMBEDDING_MODEL'),

    'db_path': os.getenv('STANDUP_DB_PATH', 'standup.db'),
    'database_url': os.getenv('DATABASE_URL'),

    'ticket_prefix': os.getenv('TICKET_PREFIX', 'SP'),
    'vector_threshold': float(os.getenv('VECTOR_MATCH_THRESHOLD', 0.75)),
    'throttle_every': int(os.getenv('THROTTLE_EVERY', 3)),
    'throttle_seconds': float(os.getenv('THROTTLE_SECONDS', 1.0)),
    'fallback_window_minutes': int(os.getenv('FALLBACK_WINDOW_MINUTES', 60)),

    'jira_url': os.getenv('JIRA_URL'),
    'jira_email': os.getenv('JIRA_EMAIL'),
    'jira_api_token': os.getenv('JIRA_API_TOKEN'),
    'jira_project_key': os.getenv('JIRA_PROJECT_KEY'),
    'jira_story_points_field': os.getenv('JIRA_STORY_POINTS_FIELD', 'customfield_10166'),
    'jira_timeout': int(os.getenv('JIRA_TIMEOUT', 15)),
    'jira_participant_mapping': os.getenv('JIRA_PARTICIPANT_MAPPING'),
}


def require(key: str, value: Optional[Any] = None) -> Any:
    """Return a config value, failing fast when it is missing."""
    resolved = value if value is not None else config.get(key)
    if resolved is None or (isinstance(resolved, str) and not resolved.strip()):
        raise ConfigurationError(f"Missing required setting '{key}'. Check your .env file.")
    return resolved
