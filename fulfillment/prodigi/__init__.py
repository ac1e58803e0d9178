from fulfillment.prodigi.client import ProdigiClient, map_remote_status, get_product_sku

__all__ = ["ProdigiClient", "map_remote_status", "get_product_sku"]
