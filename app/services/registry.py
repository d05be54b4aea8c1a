"""Read-only access to the account registry and the product catalog."""

from typing import Protocol

from sqlalchemy.orm import Session

from app.models.account import Account
from app.models.catalog import Product
from app.services.common import coerce_uuid
from app.services.exceptions import NotFoundError


class AccountRegistry(Protocol):
    def get_account(self, db: Session, account_id) -> Account: ...


class ProductCatalog(Protocol):
    def get_product(self, db: Session, product_id) -> Product: ...


class DbAccountRegistry:
    def get_account(self, db: Session, account_id) -> Account:
        account = db.get(Account, coerce_uuid(account_id))
        if not account or not account.is_active:
            raise NotFoundError("Account", account_id)
        return account


class DbProductCatalog:
    def get_product(self, db: Session, product_id) -> Product:
        product = db.get(Product, coerce_uuid(product_id))
        if not product or not product.is_active:
            raise NotFoundError("Product", product_id)
        return product


def customer_snapshot(account: Account) -> dict:
    return {
        "account_id": str(account.id),
        "name": account.name,
        "email": account.email,
        "phone": account.phone,
        "tax_id": account.tax_id,
    }


account_registry = DbAccountRegistry()
product_catalog = DbProductCatalog()
