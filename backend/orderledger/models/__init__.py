from .catalog import Supplier, RawMaterial, Product, ProductRecipe
from .orders import Order, OrderItem, OrderUndoEntry, DocumentSequence
from .stock import StockMovement, MOVEMENT_TYPES
from .conflicts import ConflictRecord
from .events import DomainEvent

__all__ = [
    'Supplier', 'RawMaterial', 'Product', 'ProductRecipe',
    'Order', 'OrderItem', 'OrderUndoEntry', 'DocumentSequence',
    'StockMovement', 'MOVEMENT_TYPES',
    'ConflictRecord',
    'DomainEvent',
]
