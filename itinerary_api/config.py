import os
from typing import Final


class _Config:
    def __init__(self) -> None:
        # Security / limits
        self.api_key: str | None = os.getenv("SERVICE_API_KEY")
        self.rate_limit: str = os.getenv("SERVICE_RATE_LIMIT", "30/minute")

        try:
            self.port: int = int(os.getenv("PORT", "3001"))
        except ValueError:
            self.port = 3001


CONFIG: Final[_Config] = _Config()
