"""
Configuration module for the editor agent core.
Handles environment variables, model specifications, and agent loop limits.
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-20250514-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "8192"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None


@dataclass
class AgentConfig:
    """Limits and switches for the agent loop"""
    max_tool_loops: int = int(os.getenv("MAX_TOOL_LOOPS", "25"))
    # LLM retry (only for retryable transport failures)
    max_retries: int = int(os.getenv("LLM_MAX_RETRIES", "2"))
    retry_delay_ms: int = int(os.getenv("LLM_RETRY_DELAY_MS", "1000"))
    retry_backoff_multiplier: float = float(os.getenv("LLM_RETRY_BACKOFF_MULTIPLIER", "2"))
    # Tool execution
    tool_timeout_ms: int = int(os.getenv("TOOL_TIMEOUT_MS", "60000"))
    max_tool_result_chars: int = int(os.getenv("MAX_TOOL_RESULT_CHARS", "10000"))
    # Context building
    max_file_content_chars: int = int(os.getenv("MAX_FILE_CONTENT_CHARS", "15000"))
    max_total_context_chars: int = int(os.getenv("MAX_TOTAL_CONTEXT_CHARS", "50000"))
    max_history_messages: int = int(os.getenv("MAX_HISTORY_MESSAGES", "50"))
    # Loop detection
    loop_repeat_threshold: int = int(os.getenv("LOOP_REPEAT_THRESHOLD", "2"))
    loop_history_size: int = int(os.getenv("LOOP_HISTORY_SIZE", "5"))
    # Observe phase (post-edit diagnostics)
    enable_auto_fix: bool = _env_bool("ENABLE_AUTO_FIX", "true")
    max_observe_issues: int = int(os.getenv("MAX_OBSERVE_ISSUES", "3"))

    @property
    def tool_timeout_secs(self) -> float:
        return self.tool_timeout_ms / 1000.0


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Editor Agent"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "editor_agent.log")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    storage_dir: str = os.getenv(
        "AGENT_STORAGE_DIR",
        os.path.join(os.path.expanduser("~"), ".editor-agent"),
    )


# ============================================================
# Model Specifications -- Anthropic Claude on Bedrock
# Every listed model supports tool_use, which the agent loop requires.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-sonnet-4-20250514-v1:0",
        "base_id": "anthropic.claude-sonnet-4-20250514-v1:0",
        "name": "Claude Sonnet 4",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
    },
    {
        "id": "us.anthropic.claude-3-7-sonnet-20250219-v1:0",
        "base_id": "anthropic.claude-3-7-sonnet-20250219-v1:0",
        "name": "Claude 3.7 Sonnet",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "requires_profile": True,
    },
    {
        "id": "us.anthropic.claude-3-5-haiku-20241022-v1:0",
        "base_id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "name": "Claude 3.5 Haiku",
        "context_window": 200000,
        "max_output_tokens": 8192,
        "requires_profile": True,
    },
]


# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
agent_config = AgentConfig()
app_config = AppConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_name(model_id: str) -> str:
    """Get the display name for a model ID"""
    model = get_model_by_id(model_id)
    return model["name"] if model else model_id


def get_max_output_tokens(model_id: str) -> int:
    model = get_model_by_id(model_id)
    return model.get("max_output_tokens", 4096) if model else 4096


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
