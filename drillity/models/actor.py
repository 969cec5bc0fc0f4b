"""
drillity/models/actor.py

Actor identity as supplied by the identity provider.
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict


class ActorType(str, Enum):
    TALENT = "talent"
    COMPANY = "company"


class Actor(BaseModel):
    """A verified talent or company account. The engine trusts actor_id as given."""
    model_config = ConfigDict(frozen=True)

    actor_id: str
    actor_type: ActorType = ActorType.TALENT
