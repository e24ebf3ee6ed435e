from .calculator import LineItem, calculate_price, line_items_for, price_from_minor

__all__ = ["LineItem", "calculate_price", "line_items_for", "price_from_minor"]
