from .product import Product
from .warehouse import Warehouse
from .supplier import Supplier
