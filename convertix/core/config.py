from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    MAX_UPLOAD_BYTES: int = 150 * 1024 * 1024
    MAX_DECODED_BYTES: int = 2 * 1024 * 1024 * 1024   # float32 PCM held in memory
    DECODE_TIMEOUT_S: float = 300.0
    ENCODE_CANCEL_STRIDE: int = 100_000               # samples between cancellation checks
    RESAMPLE_RES_TYPE: str | None = None              # None => soxr_hq if installed, else kaiser_fast

    PROBE_TIMEOUT_S: float = 10.0
    PROBE_DECODE_MAX_BYTES: int = 50 * 1024 * 1024
    WAVEFORM_BUCKETS: int = 200
    WAVEFORM_MAX_BYTES: int = 50 * 1024 * 1024


settings = Settings()
