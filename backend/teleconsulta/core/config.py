from typing import List, Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    SIGNALING_BACKEND: Literal["firestore", "sql"] = Field(default="firestore", description="Where call rooms and ICE candidate logs live")
    DATABASE_URL: str = Field(default="sqlite:///./teleconsulta.db", description="Database connection string for the SQL signaling backend")
    SQL_POLL_INTERVAL_SECONDS: float = Field(default=0.5, description="How often SQL subscriptions look for room changes and new candidates")
    FIRESTORE_ROOMS_COLLECTION: str = Field(default="videoCalls", description="Firestore collection holding one document per call room")

    # ICE servers handed to every peer connection
    STUN_URLS: List[str] = Field(default=[
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
        "stun:stun3.l.google.com:19302",
        "stun:stun4.l.google.com:19302",
    ])
    TURN_URLS: List[str] = Field(default=[], description="TURN relay URLs, e.g. turn:relay.example.com:443?transport=tcp")
    TURN_USERNAME: Optional[str] = None
    TURN_CREDENTIAL: Optional[str] = None

    # Local capture devices (ffmpeg input names)
    VIDEO_DEVICE: str = Field(default="/dev/video0", description="Camera device passed to ffmpeg")
    VIDEO_FORMAT: Optional[str] = Field(default="v4l2", description="ffmpeg input format for the camera")
    VIDEO_SIZE: str = Field(default="1280x720", description="Requested capture resolution")
    VIDEO_FRAMERATE: str = Field(default="30")
    AUDIO_DEVICE: str = Field(default="default", description="Microphone device passed to ffmpeg")
    AUDIO_FORMAT: Optional[str] = Field(default="pulse", description="ffmpeg input format for the microphone")

    APPOINTMENT_LOOKUP: bool = Field(default=True, description="Read appointment participants from Firestore for the join screen")

    APP_BASE_URL: str = Field(default="http://localhost:5173", description="Frontend origin used to build invite links")
    CORS_ORIGINS: List[str] = Field(default=["http://localhost:3003", "http://localhost:3000", "http://localhost:5173"])

    ROOM_TTL_MINUTES: int = Field(default=240, description="Rooms still waiting after this long are marked ended")
    ROOM_JANITOR_INTERVAL_SECONDS: int = Field(default=0, description="How often abandoned waiting rooms are swept; 0 (the default) never expires rooms")
    SESSION_RETENTION_SECONDS: float = Field(default=300.0, description="How long a finished session stays readable before it is dropped")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
