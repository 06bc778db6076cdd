from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel


class DeliveryEvent(BaseModel):
    """Message émis vers le fan-out temps réel à chaque changement d'une livraison."""
    event_type:  str = "status"     # "status" | "location"
    delivery_id: str
    status:      str
    actor:       Optional[str] = None
    timestamp:   datetime
    extra:       Dict[str, Any] = {}
