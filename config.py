"""Configuration for the story-relay service with per-backend timeouts."""
import logging
from typing import Dict, List

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "story_relay_secret_key_change_in_production"


class ServiceDescriptor(BaseModel):
    """Static description of one downstream AI backend."""
    model_config = ConfigDict(frozen=True)

    name: str
    health_key: str
    base_url: str
    connect_timeout: float
    probe_timeout: float
    probe_path: str
    timeouts: Dict[str, float]

    def timeout_for(self, operation: str) -> float:
        """Return the deadline in seconds for a downstream operation."""
        try:
            return self.timeouts[operation]
        except KeyError:
            raise KeyError(f"{self.name} has no operation named '{operation}'") from None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    # Application settings
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8081
    ALLOWED_ORIGINS: List[str] = ["*"]
    LOG_LEVEL: str = "INFO"

    # JWT authentication settings
    JWT_SECRET: str = DEFAULT_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"
    JWT_REQUIRED_ROLE: str = "ROLE_USER"
    JWT_DEFAULT_ROLES: List[str] = ["ROLE_USER"]
    JWT_TRUST_TOKEN_ROLES: bool = False

    # Downstream AI servers
    ANALYSIS_AI_URL: str = "http://localhost:8000"
    IMAGE_AI_URL: str = "http://localhost:8001"
    RAG_AI_URL: str = "http://localhost:8002"
    MUSIC_AI_URL: str = "http://localhost:8003"

    # Timeouts in seconds; must keep PROBE < INDEX < ANALYSIS < GENERATION
    CONNECT_TIMEOUT: float = 5.0
    PROBE_TIMEOUT: float = 5.0
    INDEX_TIMEOUT: float = 30.0
    CHAT_TIMEOUT: float = 30.0
    IMAGE_TIMEOUT: float = 30.0
    MUSIC_TIMEOUT: float = 10.0
    ANALYSIS_TIMEOUT: float = 180.0
    SUBTREE_TIMEOUT: float = 300.0
    GENERATION_TIMEOUT: float = 600.0

    def validate_settings(self):
        """Validate critical settings."""
        if self.JWT_SECRET == DEFAULT_JWT_SECRET and not self.DEBUG:
            raise ValueError("JWT_SECRET must be changed in production!")

        if not self.JWT_SECRET:
            raise ValueError("JWT_SECRET must not be empty")

        operation_timeouts = {
            "INDEX_TIMEOUT": self.INDEX_TIMEOUT,
            "CHAT_TIMEOUT": self.CHAT_TIMEOUT,
            "IMAGE_TIMEOUT": self.IMAGE_TIMEOUT,
            "MUSIC_TIMEOUT": self.MUSIC_TIMEOUT,
            "ANALYSIS_TIMEOUT": self.ANALYSIS_TIMEOUT,
            "SUBTREE_TIMEOUT": self.SUBTREE_TIMEOUT,
            "GENERATION_TIMEOUT": self.GENERATION_TIMEOUT,
        }
        for name, value in {"CONNECT_TIMEOUT": self.CONNECT_TIMEOUT,
                            "PROBE_TIMEOUT": self.PROBE_TIMEOUT,
                            **operation_timeouts}.items():
            if value <= 0:
                raise ValueError(f"{name} must be positive")

        if not (self.PROBE_TIMEOUT < self.INDEX_TIMEOUT < self.ANALYSIS_TIMEOUT < self.GENERATION_TIMEOUT):
            raise ValueError(
                "Timeouts must be ordered PROBE_TIMEOUT < INDEX_TIMEOUT < ANALYSIS_TIMEOUT < GENERATION_TIMEOUT"
            )

        for name, value in operation_timeouts.items():
            if value <= self.PROBE_TIMEOUT:
                raise ValueError(f"{name} must be greater than PROBE_TIMEOUT")

    def descriptors(self) -> Dict[str, ServiceDescriptor]:
        """Build the immutable descriptor set, keyed by backend name."""
        common = {"connect_timeout": self.CONNECT_TIMEOUT, "probe_timeout": self.PROBE_TIMEOUT}
        return {
            "Analysis": ServiceDescriptor(
                name="Analysis",
                health_key="analysisAi",
                base_url=self.ANALYSIS_AI_URL,
                probe_path="/health",
                timeouts={
                    "analyze": self.ANALYSIS_TIMEOUT,
                    "analyze_from_s3": self.ANALYSIS_TIMEOUT,
                    "finalize_analysis": self.ANALYSIS_TIMEOUT,
                    "regenerate_subtree": self.SUBTREE_TIMEOUT,
                    "generate": self.GENERATION_TIMEOUT,
                    "generate_next_episode": self.GENERATION_TIMEOUT,
                },
                **common,
            ),
            "Image": ServiceDescriptor(
                name="Image",
                health_key="imageGenerationAi",
                base_url=self.IMAGE_AI_URL,
                probe_path="/",
                timeouts={
                    "generate_image": self.IMAGE_TIMEOUT,
                    "learn_style": self.IMAGE_TIMEOUT,
                },
                **common,
            ),
            "Chat": ServiceDescriptor(
                name="Chat",
                health_key="ragAi",
                base_url=self.RAG_AI_URL,
                probe_path="/",
                timeouts={
                    "index_character": self.INDEX_TIMEOUT,
                    "index_novel": self.INDEX_TIMEOUT,
                    "set_character": self.INDEX_TIMEOUT,
                    "update_progress": self.INDEX_TIMEOUT,
                    "send_message": self.CHAT_TIMEOUT,
                },
                **common,
            ),
            "Music": ServiceDescriptor(
                name="Music",
                health_key="musicAi",
                base_url=self.MUSIC_AI_URL,
                probe_path="/api/health",
                timeouts={
                    "recommend": self.MUSIC_TIMEOUT,
                },
                **common,
            ),
        }


def load_settings() -> Settings:
    """Read settings from the environment and validate them."""
    settings = Settings()
    settings.validate_settings()
    if settings.JWT_SECRET == DEFAULT_JWT_SECRET:
        logging.getLogger("story-relay.config").warning(
            "Configuration warning: running with the default JWT_SECRET (debug mode only)"
        )
    return settings
