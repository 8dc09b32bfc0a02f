from .tenancy import Tenant, User
from .catalog import Brand, Category, Product, Supplier, ProductSupplier, SupplierProduct
from .cards import Card
from .orders import Order, OrderItem, CardOrder
from .wallet import Wallet, WalletTransaction

__all__ = [
    'Tenant', 'User',
    'Brand', 'Category', 'Product', 'Supplier', 'ProductSupplier', 'SupplierProduct',
    'Card',
    'Order', 'OrderItem', 'CardOrder',
    'Wallet', 'WalletTransaction',
]
