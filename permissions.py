"""Role capabilities.

Authorization checks read `capability in capabilities(role)`; there is no
per-request permission table.
"""
from enum import Enum
from typing import FrozenSet, Union

from schemas import Role


class Capability(str, Enum):
    MANAGE_USERS = "manage_users"
    MANAGE_PRODUCTS = "manage_products"
    MANAGE_ORDERS = "manage_orders"
    MANAGE_SHOPS = "manage_shops"
    VIEW_ANALYTICS = "view_analytics"
    MANAGE_DELIVERY_AREAS = "manage_delivery_areas"
    MANAGE_COUPONS = "manage_coupons"
    MODERATE_CONTENT = "moderate_content"
    SEND_NOTIFICATIONS = "send_notifications"
    PLACE_ORDERS = "place_orders"
    VIEW_PRODUCTS = "view_products"
    MANAGE_OWN_PROFILE = "manage_own_profile"
    WRITE_REVIEWS = "write_reviews"
    MANAGE_OWN_ADDRESSES = "manage_own_addresses"
    MANAGE_OWN_SHOP = "manage_own_shop"
    MANAGE_SHOP_PRODUCTS = "manage_shop_products"
    VIEW_SHOP_ORDERS = "view_shop_orders"
    VIEW_SHOP_ANALYTICS = "view_shop_analytics"
    SET_COMMISSION_RATES = "set_commission_rates"
    MANAGE_OWN_PRODUCTS = "manage_own_products"
    VIEW_OWN_ORDERS = "view_own_orders"
    UPDATE_INVENTORY = "update_inventory"
    VIEW_OWN_ANALYTICS = "view_own_analytics"
    VIEW_ASSIGNED_ORDERS = "view_assigned_orders"
    UPDATE_DELIVERY_STATUS = "update_delivery_status"
    UPDATE_LOCATION = "update_location"
    VIEW_DELIVERY_AREAS = "view_delivery_areas"


C = Capability


def capabilities(role: Union[Role, str, None]) -> FrozenSet[Capability]:
    try:
        role = Role(role)
    except ValueError:
        return frozenset()

    if role is Role.ADMIN:
        return frozenset({
            C.MANAGE_USERS, C.MANAGE_PRODUCTS, C.MANAGE_ORDERS, C.MANAGE_SHOPS,
            C.VIEW_ANALYTICS, C.MANAGE_DELIVERY_AREAS, C.MANAGE_COUPONS,
            C.MODERATE_CONTENT, C.SEND_NOTIFICATIONS,
        })
    if role is Role.CUSTOMER:
        return frozenset({
            C.PLACE_ORDERS, C.VIEW_PRODUCTS, C.MANAGE_OWN_PROFILE,
            C.WRITE_REVIEWS, C.MANAGE_OWN_ADDRESSES,
        })
    if role is Role.SHOP_OWNER:
        return frozenset({
            C.MANAGE_OWN_SHOP, C.MANAGE_SHOP_PRODUCTS, C.VIEW_SHOP_ORDERS,
            C.VIEW_SHOP_ANALYTICS, C.MANAGE_OWN_PROFILE, C.SET_COMMISSION_RATES,
        })
    if role is Role.SELLER:
        return frozenset({
            C.MANAGE_OWN_PRODUCTS, C.VIEW_OWN_ORDERS, C.MANAGE_OWN_PROFILE,
            C.UPDATE_INVENTORY, C.VIEW_OWN_ANALYTICS,
        })
    return frozenset({
        C.VIEW_ASSIGNED_ORDERS, C.UPDATE_DELIVERY_STATUS, C.MANAGE_OWN_PROFILE,
        C.UPDATE_LOCATION, C.VIEW_DELIVERY_AREAS,
    })


def can_manage_products(role) -> bool:
    return bool(capabilities(role) & {C.MANAGE_PRODUCTS, C.MANAGE_OWN_PRODUCTS, C.MANAGE_SHOP_PRODUCTS})


def can_place_orders(role) -> bool:
    return C.PLACE_ORDERS in capabilities(role)


def can_manage_deliveries(role) -> bool:
    return bool(capabilities(role) & {C.UPDATE_DELIVERY_STATUS, C.MANAGE_ORDERS})


ROLE_DISPLAY_NAMES = {
    Role.ADMIN: "Administrator",
    Role.CUSTOMER: "Customer",
    Role.SHOP_OWNER: "Shop Owner",
    Role.SELLER: "Seller/Producer",
    Role.RIDER: "Delivery Rider",
}


def role_display_name(role) -> str:
    try:
        return ROLE_DISPLAY_NAMES[Role(role)]
    except ValueError:
        return str(role)
