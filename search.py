from sqlalchemy import or_

from models import Product

MIN_QUERY_LENGTH = 2
DEFAULT_LIMIT = 20
MAX_LIMIT = 50


def parse_limit(value) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return DEFAULT_LIMIT
    return max(1, min(limit, MAX_LIMIT))


def search_products(session, query, limit=DEFAULT_LIMIT, sort=None):
    """Active products where every word matches the title, vendor or type."""
    query = (query or "").strip()
    if len(query) < MIN_QUERY_LENGTH:
        return []

    q = session.query(Product).filter(Product.status == "active")
    for word in query.split():
        pattern = f"%{word}%"
        q = q.filter(or_(
            Product.title.ilike(pattern),
            Product.vendor.ilike(pattern),
            Product.product_type.ilike(pattern),
        ))

    if sort == "price-asc":
        q = q.order_by(Product.price.asc())
    elif sort == "price-desc":
        q = q.order_by(Product.price.desc())
    else:
        q = q.order_by(Product.title.asc())
    return q.limit(limit).all()


def product_summary(product):
    return {
        "id": product.id,
        "title": product.title,
        "handle": product.handle,
        "vendor": product.vendor,
        "price": float(product.price),
        "compare_at_price": float(product.compare_at_price) if product.compare_at_price is not None else None,
        "inventory_count": product.inventory_count,
        "image_url": product.image_url,
    }
