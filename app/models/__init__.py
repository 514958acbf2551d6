from app.models.shipping import ShippingCarrier, ShippingZone, ShippingMethod

__all__ = ["ShippingCarrier", "ShippingZone", "ShippingMethod"]
