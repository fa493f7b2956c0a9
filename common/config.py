from pydantic_settings import BaseSettings


class ASRSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8001
    model_size: str = "tiny"
    device: str = "auto"
    compute_type: str = "auto"
    outbox_size: int = 64

    model_config = {"env_prefix": "ASR_"}


class StudioSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    asr_ws_url: str = "ws://asr:8001/transcribe"
    use_remote_worker: bool = False
    max_sessions: int = 10

    chunk_length_s: float = 30.0
    stride_length_s: float = 5.0
    return_timestamps: bool = True

    engine_runtime_path: str = ""
    local_model_path: str = ""
    allow_local: bool = True
    allow_remote: bool = True
    use_cache: bool = True

    encoder: str = "mp3"
    bitrate: str = "128k"
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"

    default_group_mode: str = "time"
    default_group_value: float = 30.0

    model_config = {"env_prefix": "STUDIO_"}
