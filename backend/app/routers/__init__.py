# API Routers
from app.routers import ari, bookings, quotes, rate_plans

__all__ = ['ari', 'bookings', 'quotes', 'rate_plans']
