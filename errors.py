from typing import Dict

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "INVALID_REQUEST": {
        "message": "Invalid request",
        "hint": "Check the request body and query parameters.",
    },
    "INVALID_SHOP_DOMAIN": {
        "message": "Invalid shop domain",
        "hint": "Shop domain must be a valid .myshopify.com domain.",
    },
    "SHOP_NOT_CONNECTED": {
        "message": "Shop not connected",
        "hint": "Please connect your Shopify store first.",
    },
    "MERCHANT_NOT_FOUND": {
        "message": "No subscription found",
        "hint": "No active subscription exists for this account.",
    },
    "INVALID_STATE": {
        "message": "Invalid authorization state",
        "hint": "Restart the Shopify connection from the settings page.",
    },
    "INVALID_SIGNATURE": {
        "message": "Invalid request signature",
        "hint": "The request was not signed by Shopify.",
    },
    "REQUEST_EXPIRED": {
        "message": "Request expired",
        "hint": "Restart the Shopify connection from the settings page.",
    },
    "AUTHORIZATION_FAILED": {
        "message": "Failed to complete authorization",
        "hint": "Try connecting your store again.",
    },
    "CHARGE_CREATION_FAILED": {
        "message": "Failed to create charge",
        "hint": "Unable to create subscription. Please try again.",
    },
    "ACTIVATION_FAILED": {
        "message": "Subscription activation failed",
        "hint": "Restart the upgrade from the dashboard.",
    },
    "UNAUTHORIZED": {
        "message": "Missing or invalid authorization",
        "hint": "Sign in again and retry.",
    },
    "UNEXPECTED_ERROR": {
        "message": "Unexpected error",
        "hint": "Check the service logs or contact support.",
    },
}

# Redirect flags understood by the dashboard; keys are error codes above.
REDIRECT_ERROR_FLAGS: Dict[str, str] = {
    "INVALID_SHOP_DOMAIN": "invalid_shop",
    "INVALID_STATE": "invalid_state",
    "INVALID_SIGNATURE": "invalid_signature",
    "REQUEST_EXPIRED": "request_expired",
    "AUTHORIZATION_FAILED": "authorization_failed",
    "SHOP_NOT_CONNECTED": "shop_not_connected",
    "ACTIVATION_FAILED": "activation_failed",
    "INVALID_REQUEST": "invalid_request",
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)


def redirect_flag(code: str) -> str:
    return REDIRECT_ERROR_FLAGS.get(code, "unexpected_error")
