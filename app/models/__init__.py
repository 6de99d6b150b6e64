# app/models/__init__.py
from app.models.enums import MovementType, OrderStatus, PaymentStatus
from app.models.inventory_movement import InventoryMovement
from app.models.order import Order
from app.models.product import Product
from app.models.stock_reservation import StockReservation

__all__ = [
    "InventoryMovement",
    "MovementType",
    "Order",
    "OrderStatus",
    "PaymentStatus",
    "Product",
    "StockReservation",
]
