"""Runtime configuration for the trivia voice engine."""

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven runtime settings."""

    model_config = SettingsConfigDict(env_prefix="TRIVIA_VOICE_", env_file=".env", extra="ignore")

    app_name: str = "party-trivia-voice"
    log_level: str = "INFO"

    language: str = "en-US"
    continuous: bool = True
    interim_results: bool = False
    restart_backoff_seconds: float = Field(
        default=0.3,
        ge=0.0,
        description="Delay before re-opening the recognition provider after it closes.",
    )
    sample_rate: int = 16_000
    frame_samples: int = 1_024
    phrase_seconds: float = 4.0

    stt_backend: str = Field(default="speechrecognition", description="Recognition backend: speechrecognition or deepgram.")
    deepgram_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("TRIVIA_VOICE_DEEPGRAM_API_KEY", "DEEPGRAM_API_KEY"),
    )
    deepgram_model: str = "nova-2"
    utterance_end_ms: int = 1_000

    snapshot_samples: int = Field(
        default=2_048,
        description="Number of recent samples analysed when attributing an utterance to a speaker.",
    )
    speaker_rejection_threshold: float = 500.0
    pitch_weight: float = 2.0
    centroid_divisor: float = 100.0
    formant_divisor: float = 50.0
    zcr_weight: float = 1_000.0

    coverage_threshold: float = 0.5
    max_answers_per_phrase: int = 4


settings = Settings()
