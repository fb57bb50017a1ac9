"""
Offer pricing: the better of the product and category offer wins
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any

from models.product import Product


def round_half_up(amount: float) -> float:
    """Round to whole currency units, halves away from zero."""
    return float(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PricingService:

    @staticmethod
    def best_offer(product: Product) -> Dict[str, Any]:
        """
        Compute the price a customer pays for one unit of ``product``.

        Offers are percentages of the regular price; without any offer the
        sale price (or the regular price) applies. Prices are rounded to
        whole currency units.
        """
        product_offer = product.offer_percentage or 0
        category_offer = (product.category.offer_percentage or 0) if product.category is not None else 0
        best_percentage = max(product_offer, category_offer)

        if best_percentage > 0:
            offer_type = "product" if product_offer >= category_offer else "category"
            discount_amount = product.regular_price * best_percentage / 100
            final_price = product.regular_price - discount_amount
        else:
            offer_type = "none"
            discount_amount = 0
            final_price = product.sale_price or product.regular_price

        return {
            "original_price": product.regular_price,
            "best_offer_percentage": best_percentage,
            "offer_type": offer_type,
            "discount_amount": round_half_up(discount_amount),
            "final_price": round_half_up(final_price),
            "has_offer": best_percentage > 0,
        }
