# donor_alerts/models/user_profile.py
from typing import Dict, Optional

from pydantic import BaseModel, Field


class UserProfile(BaseModel):
    id: str
    fcmToken: Optional[str] = None
    # gateway-side targeting tags, e.g. {"city": "Lagos", "bloodType": "O-"}
    tags: Dict[str, str] = Field(default_factory=dict)

    @property
    def has_token(self) -> bool:
        return bool(self.fcmToken and self.fcmToken.strip())
