"""
Order Service: 価格計算

カタログサービスから取得した商品スナップショットだけを使って
明細ごとの単価・合計金額・合計点数を計算する。
クライアントが送ってきた価格は一切信用しない。

I/O を持たない純粋関数なので、ネットワークや DB なしでテストできる。
"""

from decimal import Decimal

from .errors import UnknownProduct
from .models import PricedLine, PricedOrder, ProductSnapshot, RequestedItem


def price_items(
    items: list[RequestedItem],
    catalog: list[ProductSnapshot],
) -> PricedOrder:
    """
    明細を価格付けする。

    同じ商品 ID が複数明細に現れても、明細はまとめずに
    それぞれ同じスナップショットの価格で計算する。
    1 件でもカタログに無い商品があれば UnknownProduct (部分的な結果は返さない)。
    """
    by_id = {product.id: product for product in catalog}

    lines: list[PricedLine] = []
    for item in items:
        product = by_id.get(item.product_id)
        if product is None:
            raise UnknownProduct(item.product_id)
        lines.append(
            PricedLine(
                product_id=item.product_id,
                quantity=item.quantity,
                price=product.price,
            )
        )

    total_amount = sum((line.price * line.quantity for line in lines), Decimal("0"))
    total_items = sum(line.quantity for line in lines)
    return PricedOrder(lines=lines, total_amount=total_amount, total_items=total_items)
