# Ontology Models
from app.models.ontology import (
    RoomType, Room, Inventory, RatePlan, Rate, Restriction,
    Guest, Reservation, ReservationGuest, Folio,
    IdempotencyRecord, AriEvent, SystemLog
)

__all__ = [
    'RoomType', 'Room', 'Inventory', 'RatePlan', 'Rate', 'Restriction',
    'Guest', 'Reservation', 'ReservationGuest', 'Folio',
    'IdempotencyRecord', 'AriEvent', 'SystemLog'
]
