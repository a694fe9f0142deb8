"""Fixed eBay hosts and scopes, keyed by environment."""

API_BASE = {
    "sandbox": "https://api.sandbox.ebay.com",
    "production": "https://api.ebay.com",
}

AUTH_BASE = {
    "sandbox": "https://auth.sandbox.ebay.com/oauth2/authorize",
    "production": "https://auth.ebay.com/oauth2/authorize",
}

SCOPE_PREFIX = "https://api.ebay.com/oauth/api_scope"
SCOPE_ACCOUNT = f"{SCOPE_PREFIX}/sell.account"
SCOPE_INVENTORY = f"{SCOPE_PREFIX}/sell.inventory"
SCOPE_FULFILLMENT = f"{SCOPE_PREFIX}/sell.fulfillment"
SCOPE_FULFILLMENT_READONLY = f"{SCOPE_PREFIX}/sell.fulfillment.readonly"

REQUIRED_SCOPES = (SCOPE_ACCOUNT, SCOPE_INVENTORY, SCOPE_FULFILLMENT)

ORDERS_PATH = "/sell/fulfillment/v1/order"
INVENTORY_ITEMS_PATH = "/sell/inventory/v1/inventory_item"
OFFERS_PATH = "/sell/inventory/v1/offer"
BULK_UPDATE_PATH = "/sell/inventory/v1/bulk_update_price_quantity"
PRIVILEGE_PATH = "/sell/account/v1/privilege"


def normalize_environment(environment) -> str:
    return "sandbox" if str(environment or "").lower() == "sandbox" else "production"


def api_base(environment) -> str:
    return API_BASE[normalize_environment(environment)]


def token_url(environment) -> str:
    return f"{api_base(environment)}/identity/v1/oauth2/token"


def auth_url(environment) -> str:
    return AUTH_BASE[normalize_environment(environment)]


IDENTITY_URL = {
    "sandbox": "https://apiz.sandbox.ebay.com/commerce/identity/v1/user",
    "production": "https://apiz.ebay.com/commerce/identity/v1/user",
}


def identity_url(environment) -> str:
    return IDENTITY_URL[normalize_environment(environment)]
