"""Runtime settings loaded from the environment (and an optional .env file)."""

import os

from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()


GENERATION2_POLICIES = ("row_order", "reference_only")


class Settings:
    # -------------------------------------------------------
    # Project
    # -------------------------------------------------------
    PROJECT_NAME: str = "Silsilah"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # -------------------------------------------------------
    # Database
    # -------------------------------------------------------
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./silsilah.db")

    # Hosted Postgres URLs use postgres:// but SQLAlchemy needs postgresql://
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

    # -------------------------------------------------------
    # Import / relationship inference
    # -------------------------------------------------------
    # Name of the generation-1 patriarch/matriarch. When unset, the first
    # generation-1 member inserted is used as the tree root.
    ROOT_MEMBER_NAME: str | None = os.getenv("ROOT_MEMBER_NAME") or None

    # How a generation-2 couple with equal evidence is split into
    # blood descendant and in-law: "row_order" or "reference_only".
    GENERATION2_POLICY: str = os.getenv("GENERATION2_POLICY", "row_order")

    # 0.0 disables the length-ratio check on containment matches.
    MIN_CONTAINMENT_RATIO: float = float(os.getenv("MIN_CONTAINMENT_RATIO", "0.0"))

    # -------------------------------------------------------
    # HTTP
    # -------------------------------------------------------
    CORS_ORIGINS: list[str] = [
        origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()
    ]

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)
        if self.GENERATION2_POLICY not in GENERATION2_POLICIES:
            raise ValueError(
                f"GENERATION2_POLICY must be one of {GENERATION2_POLICIES}, "
                f"got {self.GENERATION2_POLICY!r}"
            )


# Single instance that is imported everywhere
settings = Settings()
