"""
Storefront services

Business rules on top of the relational store. Every write runs inside
`database.transaction`, so a rejected step rolls the whole unit back.

Rules the store cannot express on its own live here:
- one default address per (user, type)
- adding an existing (product, variant) pair to a cart bumps its quantity
- checkout decrements stock with a conditional UPDATE in the order's transaction
- order totals: total = subtotal + tax + shipping_cost
- order, payment and shipping lifecycles
"""
import logging
import uuid
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, selectinload

import config
import schemas
from database import create_record, get_records, transaction
from errors import ConstraintViolation, InvalidTransition, NotFound, OutOfStock, ValidationFailed
from models import (
    Address,
    AddressType,
    Cart,
    CartItem,
    Category,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    Product,
    ProductImage,
    ProductSpecification,
    ProductStatus,
    ProductVariant,
    Review,
    ReviewImage,
    Shipping,
    ShippingMethod,
    ShippingStatus,
    User,
    UserPreferences,
    UserRole,
    Wishlist,
    WishlistItem,
    utc_now,
)

logger = logging.getLogger("storefront")

SHIPPING_RATES = {
    ShippingMethod.standard: (config.SHIPPING_STANDARD, config.SHIPPING_STANDARD_DAYS),
    ShippingMethod.express: (config.SHIPPING_EXPRESS, config.SHIPPING_EXPRESS_DAYS),
    ShippingMethod.next_day: (config.SHIPPING_NEXT_DAY, config.SHIPPING_NEXT_DAY_DAYS),
}

PRODUCT_SORTS = ("name", "price_asc", "price_desc", "newest", "rating")

ORDER_TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.processing, OrderStatus.cancelled},
    OrderStatus.processing: {OrderStatus.shipped, OrderStatus.cancelled},
    OrderStatus.shipped: {OrderStatus.delivered},
    OrderStatus.delivered: set(),
    OrderStatus.cancelled: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.pending: {PaymentStatus.completed, PaymentStatus.failed},
    PaymentStatus.completed: {PaymentStatus.refunded},
    PaymentStatus.failed: set(),
    PaymentStatus.refunded: set(),
}

SHIPPING_TRANSITIONS = {
    ShippingStatus.pending: {ShippingStatus.processing, ShippingStatus.failed},
    ShippingStatus.processing: {ShippingStatus.shipped, ShippingStatus.failed},
    ShippingStatus.shipped: {ShippingStatus.delivered, ShippingStatus.failed},
    ShippingStatus.delivered: set(),
    ShippingStatus.failed: set(),
}

# shipping work starts only once the order is paid
FULFILMENT_STATUSES = {ShippingStatus.processing, ShippingStatus.shipped, ShippingStatus.delivered}
FULFILLABLE_ORDER_STATUSES = {OrderStatus.processing, OrderStatus.shipped, OrderStatus.delivered}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get(db: Session, model, ident, label: str):
    obj = db.get(model, ident)
    if obj is None:
        raise NotFound(f"{label} not found")
    return obj


def _apply(obj, data: BaseModel, nullable: Tuple[str, ...] = ()) -> Dict[str, Any]:
    """Copy the fields a client actually sent onto `obj`."""
    changes = {
        field: value
        for field, value in data.model_dump(exclude_unset=True).items()
        if value is not None or field in nullable
    }
    for field, value in changes.items():
        setattr(obj, field, value)
    return changes


def _check_transition(kind: str, table: dict, current, target) -> None:
    if target not in table[current]:
        raise InvalidTransition(f"Cannot move {kind} from {current.value} to {target.value}")


def compute_tax(subtotal: int) -> int:
    tax = Decimal(subtotal) * Decimal(str(config.DEFAULT_TAX_RATE))
    return int(tax.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_totals(subtotal: int, shipping_cost: int) -> Dict[str, int]:
    tax = compute_tax(subtotal)
    return {"subtotal": subtotal, "tax": tax, "shipping": shipping_cost, "total": subtotal + tax + shipping_cost}


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def create_user(db: Session, data: schemas.UserCreate) -> User:
    if db.scalar(select(User.id).where(User.email == data.email)) is not None:
        raise ConstraintViolation("Email already in use")
    user = User(**data.model_dump())
    user.preferences = UserPreferences()
    user.cart = Cart()
    user = create_record(db, user)
    logger.info("Created user %s (%s)", user.id, user.role.value)
    return user


def get_user(db: Session, user_id: uuid.UUID) -> User:
    return _get(db, User, user_id, "User")


def list_users(db: Session, limit: int = 100) -> List[User]:
    return get_records(db, User, order_by=User.created_at, limit=limit)


def update_user(db: Session, user_id: uuid.UUID, data: schemas.UserUpdate) -> User:
    user = get_user(db, user_id)
    with transaction(db):
        _apply(user, data, nullable=("phone",))
    return user


def delete_user(db: Session, user_id: uuid.UUID) -> None:
    user = get_user(db, user_id)
    with transaction(db):
        db.delete(user)
    logger.info("Deleted user %s; orders and reviews kept", user_id)


def get_preferences(db: Session, user_id: uuid.UUID) -> UserPreferences:
    get_user(db, user_id)
    prefs = db.get(UserPreferences, user_id)
    if prefs is None:
        prefs = create_record(db, UserPreferences(user_id=user_id))
    return prefs


def update_preferences(db: Session, user_id: uuid.UUID, data: schemas.PreferencesUpdate) -> UserPreferences:
    prefs = get_preferences(db, user_id)
    with transaction(db):
        _apply(prefs, data)
    return prefs


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

def _owned_address(db: Session, user_id: uuid.UUID, address_id: uuid.UUID) -> Address:
    address = db.get(Address, address_id)
    if address is None or address.user_id != user_id:
        raise NotFound("Address not found")
    return address


def _clear_default(db: Session, user_id: uuid.UUID, address_type: AddressType, keep_id: uuid.UUID = None) -> None:
    stmt = update(Address).where(
        Address.user_id == user_id,
        Address.type == address_type,
        Address.is_default.is_(True),
    )
    if keep_id is not None:
        stmt = stmt.where(Address.id != keep_id)
    db.execute(stmt.values(is_default=False, updated_at=utc_now()).execution_options(synchronize_session=False))


def list_addresses(db: Session, user_id: uuid.UUID) -> List[Address]:
    get_user(db, user_id)
    return get_records(db, Address, Address.user_id == user_id, order_by=Address.created_at)


def create_address(db: Session, user_id: uuid.UUID, data: schemas.AddressCreate) -> Address:
    get_user(db, user_id)
    with transaction(db):
        existing = db.scalar(
            select(func.count()).select_from(Address).where(Address.user_id == user_id, Address.type == data.type)
        )
        # first address of a type becomes its default
        is_default = data.is_default or not existing
        if is_default:
            _clear_default(db, user_id, data.type)
        address = Address(user_id=user_id, is_default=is_default, **data.model_dump(exclude={"is_default"}))
        db.add(address)
    return address


def update_address(db: Session, user_id: uuid.UUID, address_id: uuid.UUID, data: schemas.AddressUpdate) -> Address:
    address = _owned_address(db, user_id, address_id)
    changes = data.model_dump(exclude_unset=True)
    with transaction(db):
        new_type = changes.get("type") or address.type
        if changes.get("is_default"):
            _clear_default(db, user_id, new_type, keep_id=address.id)
        elif new_type != address.type and address.is_default:
            # the other type may already have its own default
            address.is_default = False
        _apply(address, data)
    return address


def delete_address(db: Session, user_id: uuid.UUID, address_id: uuid.UUID) -> None:
    address = _owned_address(db, user_id, address_id)
    with transaction(db):
        db.delete(address)


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

def list_categories(db: Session, active_only: bool = False) -> List[Category]:
    criteria = [Category.is_active.is_(True)] if active_only else []
    return get_records(db, Category, *criteria, order_by=Category.display_order)


def category_tree(db: Session) -> List[Category]:
    """Root categories; children hang off `Category.children`."""
    return get_records(db, Category, Category.parent_id.is_(None), order_by=Category.display_order)


def category_subtree_ids(db: Session, root_id: uuid.UUID) -> List[uuid.UUID]:
    ids = [root_id]
    frontier = [root_id]
    while frontier:
        frontier = list(db.scalars(select(Category.id).where(Category.parent_id.in_(frontier))))
        ids.extend(frontier)
    return ids


def get_category(db: Session, category_id: uuid.UUID) -> Category:
    return _get(db, Category, category_id, "Category")


def create_category(db: Session, data: schemas.CategoryCreate) -> Category:
    if data.parent_id is not None and db.get(Category, data.parent_id) is None:
        raise ValidationFailed("Parent category not found")
    return create_record(db, Category(**data.model_dump()))


def update_category(db: Session, category_id: uuid.UUID, data: schemas.CategoryUpdate) -> Category:
    category = get_category(db, category_id)
    changes = data.model_dump(exclude_unset=True)
    parent_id = changes.get("parent_id")
    if parent_id is not None:
        node = db.get(Category, parent_id)
        if node is None:
            raise ValidationFailed("Parent category not found")
        while node is not None:
            if node.id == category.id:
                raise ValidationFailed("A category cannot be moved below itself")
            node = node.parent
    with transaction(db):
        _apply(category, data, nullable=("description", "parent_id", "image_url"))
    return category


def delete_category(db: Session, category_id: uuid.UUID) -> None:
    category = get_category(db, category_id)
    if db.scalar(select(func.count()).select_from(Category).where(Category.parent_id == category.id)):
        raise ConstraintViolation("Category has subcategories")
    if db.scalar(select(func.count()).select_from(Product).where(Product.category_id == category.id)):
        raise ConstraintViolation("Category still has products")
    with transaction(db):
        db.delete(category)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

def _check_discount(price: int, discount_price: Optional[int]) -> None:
    if discount_price is not None and discount_price > price:
        raise ValidationFailed("Discount price cannot exceed price")


def list_products(
    db: Session,
    q: Optional[str] = None,
    category_id: Optional[uuid.UUID] = None,
    min_price: Optional[int] = None,
    max_price: Optional[int] = None,
    status: Optional[str] = ProductStatus.active.value,
    sort: Optional[str] = None,
    limit: int = 24,
    page: int = 1,
) -> Tuple[List[Product], int]:
    if sort is not None and sort not in PRODUCT_SORTS:
        raise ValidationFailed(f"Unknown sort: {sort}")
    stmt = select(Product)
    if status:
        stmt = stmt.where(Product.status == status)
    if q:
        pattern = f"%{q}%"
        stmt = stmt.where(or_(Product.name.ilike(pattern), Product.description.ilike(pattern)))
    if category_id is not None:
        stmt = stmt.where(Product.category_id.in_(category_subtree_ids(db, category_id)))
    price = func.coalesce(Product.discount_price, Product.price)
    if min_price is not None:
        stmt = stmt.where(price >= min_price)
    if max_price is not None:
        stmt = stmt.where(price <= max_price)

    total = db.scalar(select(func.count()).select_from(stmt.subquery()))

    ordering = {
        "name": Product.name.asc(),
        "price_asc": price.asc(),
        "price_desc": price.desc(),
        "newest": Product.created_at.desc(),
        "rating": Product.rating.desc(),
    }[sort or "name"]
    stmt = (
        stmt.order_by(ordering, Product.id)
        .offset((page - 1) * limit)
        .limit(limit)
        .options(
            selectinload(Product.images),
            selectinload(Product.variants),
            selectinload(Product.specifications),
        )
    )
    return list(db.scalars(stmt)), total


def get_product(db: Session, product_id: uuid.UUID) -> Product:
    return _get(db, Product, product_id, "Product")


def create_product(db: Session, data: schemas.ProductCreate) -> Product:
    if db.get(Category, data.category_id) is None:
        raise ValidationFailed("Category not found")
    _check_discount(data.price, data.discount_price)
    product = Product(
        name=data.name,
        description=data.description,
        price=data.price,
        discount_price=data.discount_price,
        category_id=data.category_id,
        stock=data.stock,
        status=data.status.value,
    )
    product.images = [ProductImage(url=i.url, display_order=i.display_order) for i in data.images]
    product.variants = [ProductVariant(**v.model_dump()) for v in data.variants]
    product.specifications = [ProductSpecification(key=k, value=v) for k, v in data.specifications.items()]
    product = create_record(db, product)
    logger.info("Created product %s (%s)", product.id, product.name)
    return product


def update_product(db: Session, product_id: uuid.UUID, data: schemas.ProductUpdate) -> Product:
    product = get_product(db, product_id)
    changes = data.model_dump(exclude_unset=True)
    if changes.get("category_id") is not None and db.get(Category, changes["category_id"]) is None:
        raise ValidationFailed("Category not found")
    _check_discount(
        changes["price"] if changes.get("price") is not None else product.price,
        changes["discount_price"] if "discount_price" in changes else product.discount_price,
    )
    with transaction(db):
        _apply(product, data, nullable=("discount_price",))
        if data.status is not None:
            product.status = data.status.value
    return product


def product_references(db: Session, product_id: uuid.UUID) -> Dict[str, int]:
    counts = {}
    for label, model in (
        ("order items", OrderItem),
        ("reviews", Review),
        ("wishlist items", WishlistItem),
        ("cart items", CartItem),
    ):
        count = db.scalar(select(func.count()).select_from(model).where(model.product_id == product_id))
        if count:
            counts[label] = count
    return counts


def delete_product(db: Session, product_id: uuid.UUID) -> None:
    product = get_product(db, product_id)
    references = product_references(db, product.id)
    if references:
        detail = ", ".join(f"{count} {label}" for label, count in references.items())
        logger.warning("Refusing to delete product %s referenced by %s", product.id, detail)
        raise ConstraintViolation(f"Product is referenced by {detail}; archive it instead")
    with transaction(db):
        db.delete(product)
    logger.info("Deleted product %s", product_id)


def archive_product(db: Session, product_id: uuid.UUID) -> Product:
    product = get_product(db, product_id)
    with transaction(db):
        product.status = ProductStatus.archived.value
    logger.info("Archived product %s", product_id)
    return product


def add_product_image(db: Session, product_id: uuid.UUID, data: schemas.ImageCreate) -> ProductImage:
    product = get_product(db, product_id)
    image = ProductImage(url=data.url, display_order=data.display_order)
    with transaction(db):
        product.images.append(image)
        product.touch()
    return image


def _owned_variant(db: Session, product_id: uuid.UUID, variant_id: uuid.UUID) -> ProductVariant:
    variant = db.get(ProductVariant, variant_id)
    if variant is None or variant.product_id != product_id:
        raise NotFound("Variant not found")
    return variant


def add_variant(db: Session, product_id: uuid.UUID, data: schemas.VariantCreate) -> ProductVariant:
    product = get_product(db, product_id)
    variant = ProductVariant(**data.model_dump())
    with transaction(db):
        product.variants.append(variant)
        product.touch()
    return variant


def update_variant(
    db: Session, product_id: uuid.UUID, variant_id: uuid.UUID, data: schemas.VariantUpdate
) -> ProductVariant:
    variant = _owned_variant(db, product_id, variant_id)
    with transaction(db):
        _apply(variant, data)
    return variant


def delete_variant(db: Session, product_id: uuid.UUID, variant_id: uuid.UUID) -> None:
    variant = _owned_variant(db, product_id, variant_id)
    with transaction(db):
        db.delete(variant)


def set_specification(db: Session, product_id: uuid.UUID, key: str, value: str) -> ProductSpecification:
    product = get_product(db, product_id)
    spec = db.scalar(
        select(ProductSpecification).where(
            ProductSpecification.product_id == product.id, ProductSpecification.key == key
        )
    )
    with transaction(db):
        if spec is None:
            spec = ProductSpecification(key=key, value=value)
            product.specifications.append(spec)
        else:
            spec.value = value
        product.touch()
    return spec


def delete_specification(db: Session, product_id: uuid.UUID, key: str) -> None:
    product = get_product(db, product_id)
    spec = db.scalar(
        select(ProductSpecification).where(
            ProductSpecification.product_id == product.id, ProductSpecification.key == key
        )
    )
    if spec is None:
        raise NotFound("Specification not found")
    with transaction(db):
        db.delete(spec)
        product.touch()


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------

def _cart_for(db: Session, user_id: uuid.UUID, lock: bool = True) -> Cart:
    """The user's cart, created on demand. Locks the row on backends that can."""
    get_user(db, user_id)
    stmt = select(Cart).where(Cart.user_id == user_id)
    if lock:
        stmt = stmt.with_for_update()
    cart = db.scalar(stmt)
    if cart is None:
        cart = Cart(user_id=user_id)
        db.add(cart)
        db.flush()
    return cart


def _available_stock(product: Product, variant: Optional[ProductVariant]) -> int:
    return variant.stock if variant is not None else product.stock


def cart_totals(cart: Cart, shipping_method: ShippingMethod = ShippingMethod.standard) -> Dict[str, int]:
    subtotal = sum(item.line_total for item in cart.items)
    shipping_cost = SHIPPING_RATES[shipping_method][0] if cart.items else 0
    return compute_totals(subtotal, shipping_cost)


def get_cart(db: Session, user_id: uuid.UUID) -> Cart:
    with transaction(db):
        cart = _cart_for(db, user_id, lock=False)
    return cart


def add_cart_item(db: Session, user_id: uuid.UUID, data: schemas.CartItemCreate) -> Cart:
    product = db.get(Product, data.product_id)
    if product is None:
        raise NotFound("Product not found")
    if product.status != ProductStatus.active.value:
        raise ValidationFailed("Product is not available")
    variant = None
    if data.variant_id is not None:
        variant = db.get(ProductVariant, data.variant_id)
        if variant is None or variant.product_id != product.id:
            raise ValidationFailed("Variant does not belong to product")

    with transaction(db):
        cart = _cart_for(db, user_id)
        same_variant = CartItem.variant_id.is_(None) if variant is None else CartItem.variant_id == variant.id
        item = db.scalar(
            select(CartItem).where(CartItem.cart_id == cart.id, CartItem.product_id == product.id, same_variant)
        )
        quantity = data.quantity + (item.quantity if item is not None else 0)
        if quantity > _available_stock(product, variant):
            raise OutOfStock(f"Only {_available_stock(product, variant)} of {product.name} left in stock")
        if item is not None:
            item.quantity = quantity
        else:
            cart.items.append(CartItem(product_id=product.id, variant_id=data.variant_id, quantity=quantity))
        cart.touch()
    logger.info("Cart %s: %s x%d", cart.id, product.id, data.quantity)
    return cart


def _owned_cart_item(cart: Cart, item_id: uuid.UUID) -> CartItem:
    for item in cart.items:
        if item.id == item_id:
            return item
    raise NotFound("Cart item not found")


def update_cart_item(db: Session, user_id: uuid.UUID, item_id: uuid.UUID, quantity: int) -> Cart:
    with transaction(db):
        cart = _cart_for(db, user_id)
        item = _owned_cart_item(cart, item_id)
        available = _available_stock(item.product, item.variant)
        if quantity > available:
            raise OutOfStock(f"Only {available} of {item.product.name} left in stock")
        item.quantity = quantity
        cart.touch()
    return cart


def remove_cart_item(db: Session, user_id: uuid.UUID, item_id: uuid.UUID) -> Cart:
    with transaction(db):
        cart = _cart_for(db, user_id)
        cart.items.remove(_owned_cart_item(cart, item_id))
        cart.touch()
    return cart


def clear_cart(db: Session, user_id: uuid.UUID) -> Cart:
    with transaction(db):
        cart = _cart_for(db, user_id)
        cart.items.clear()
        cart.touch()
    return cart


# ---------------------------------------------------------------------------
# Checkout & orders
# ---------------------------------------------------------------------------

def _checkout_address(
    db: Session,
    user_id: uuid.UUID,
    address_id: Optional[uuid.UUID],
    address_type: AddressType,
    fallback: Optional[Address] = None,
) -> Address:
    if address_id is not None:
        address = db.get(Address, address_id)
        if address is None or address.user_id != user_id:
            raise ValidationFailed(f"Unknown {address_type.value} address")
        if address.type != address_type:
            raise ValidationFailed(f"Address {address_id} is not a {address_type.value} address")
        return address
    address = db.scalar(
        select(Address).where(
            Address.user_id == user_id, Address.type == address_type, Address.is_default.is_(True)
        )
    )
    if address is None:
        address = fallback
    if address is None:
        raise ValidationFailed(f"No {address_type.value} address given and no default on file")
    return address


def _reserve_stock(db: Session, item: CartItem) -> None:
    target = ProductVariant if item.variant_id is not None else Product
    ident = item.variant_id if item.variant_id is not None else item.product_id
    result = db.execute(
        update(target)
        .where(target.id == ident, target.stock >= item.quantity)
        .values(stock=target.stock - item.quantity, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise OutOfStock(f"Not enough stock for {item.product.name}")


def _release_stock(db: Session, order: Order) -> None:
    for item in order.items:
        target = ProductVariant if item.variant_id is not None else Product
        ident = item.variant_id if item.variant_id is not None else item.product_id
        db.execute(
            update(target)
            .where(target.id == ident)
            .values(stock=target.stock + item.quantity, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )


def check_totals(order: Order) -> None:
    if order.total != order.subtotal + order.tax + order.shipping_cost:
        raise ValidationFailed("Order total must equal subtotal + tax + shipping cost")


def checkout(db: Session, user_id: uuid.UUID, data: schemas.CheckoutIn) -> Order:
    with transaction(db):
        cart = _cart_for(db, user_id)
        if not cart.items:
            raise ValidationFailed("Cart is empty")
        shipping_address = _checkout_address(db, user_id, data.shipping_address_id, AddressType.shipping)
        billing_address = _checkout_address(
            db, user_id, data.billing_address_id, AddressType.billing, fallback=shipping_address
        )
        shipping_cost, delivery_days = SHIPPING_RATES[data.shipping_method]

        order = Order(
            user_id=user_id,
            status=OrderStatus.pending,
            shipping_address_id=shipping_address.id,
            billing_address_id=billing_address.id,
            shipping_address_snapshot=shipping_address.snapshot(),
            billing_address_snapshot=billing_address.snapshot(),
        )
        subtotal = 0
        for item in cart.items:
            product = item.product
            if product.status != ProductStatus.active.value:
                raise ValidationFailed(f"{product.name} is no longer available")
            _reserve_stock(db, item)
            name = product.name if item.variant is None else f"{product.name} ({item.variant.name})"
            order.items.append(
                OrderItem(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    price=item.unit_price,
                    name=name[:255],
                )
            )
            subtotal += item.line_total

        totals = compute_totals(subtotal, shipping_cost)
        order.subtotal = totals["subtotal"]
        order.tax = totals["tax"]
        order.shipping_cost = totals["shipping"]
        order.total = totals["total"]
        check_totals(order)

        order.payment = Payment(amount=order.total, method=data.payment_method, status=PaymentStatus.pending)
        order.shipping = Shipping(
            method=data.shipping_method,
            status=ShippingStatus.pending,
            cost=shipping_cost,
            estimated_delivery=utc_now() + timedelta(days=delivery_days),
        )
        db.add(order)
        cart.items.clear()
        cart.touch()
    logger.info("Order %s placed by %s: total=%d", order.id, user_id, order.total)
    return order


def get_order(db: Session, order_id: uuid.UUID) -> Order:
    return _get(db, Order, order_id, "Order")


def list_orders(db: Session, user_id: uuid.UUID, limit: int = 100) -> List[Order]:
    get_user(db, user_id)
    stmt = (
        select(Order)
        .where(Order.user_id == user_id)
        .order_by(Order.created_at.desc())
        .limit(limit)
        .options(selectinload(Order.items), selectinload(Order.payment), selectinload(Order.shipping))
    )
    return list(db.scalars(stmt))


def _check_cancellable(order: Order) -> None:
    _check_transition("order", ORDER_TRANSITIONS, order.status, OrderStatus.cancelled)
    shipping = order.shipping
    if shipping is not None and shipping.status in (ShippingStatus.shipped, ShippingStatus.delivered):
        raise InvalidTransition(f"Cannot cancel an order whose shipment is {shipping.status.value}")


def _cancel(db: Session, order: Order) -> None:
    """Cancel inside the caller's transaction: release stock and settle the payment."""
    _check_cancellable(order)
    order.status = OrderStatus.cancelled
    _release_stock(db, order)
    payment = order.payment
    if payment is not None:
        if payment.status == PaymentStatus.completed:
            payment.status = PaymentStatus.refunded
        elif payment.status == PaymentStatus.pending:
            payment.status = PaymentStatus.failed


def cancel_order(db: Session, order_id: uuid.UUID) -> Order:
    order = get_order(db, order_id)
    _check_cancellable(order)
    with transaction(db):
        _cancel(db, order)
    logger.info("Order %s cancelled; stock released", order_id)
    return order


def set_order_status(db: Session, order_id: uuid.UUID, status: OrderStatus) -> Order:
    if status == OrderStatus.cancelled:
        return cancel_order(db, order_id)
    order = get_order(db, order_id)
    _check_transition("order", ORDER_TRANSITIONS, order.status, status)
    with transaction(db):
        order.status = status
    logger.info("Order %s -> %s", order_id, status.value)
    return order


def update_payment(db: Session, order_id: uuid.UUID, data: schemas.PaymentUpdate) -> Order:
    order = get_order(db, order_id)
    payment = order.payment
    if payment is None:
        raise NotFound("Payment not found")
    if data.status != payment.status:
        _check_transition("payment", PAYMENT_TRANSITIONS, payment.status, data.status)
    with transaction(db):
        payment.status = data.status
        if data.transaction_id is not None:
            payment.transaction_id = data.transaction_id
        # a settled payment releases the order to fulfilment
        if data.status == PaymentStatus.completed and order.status == OrderStatus.pending:
            order.status = OrderStatus.processing
        # a refund before delivery cancels the order; shipped orders cannot be refunded
        if data.status == PaymentStatus.refunded and order.status not in (
            OrderStatus.cancelled,
            OrderStatus.delivered,
        ):
            _cancel(db, order)
    logger.info("Payment for order %s -> %s", order_id, data.status.value)
    return order


def update_shipping(db: Session, order_id: uuid.UUID, data: schemas.ShippingUpdate) -> Order:
    order = get_order(db, order_id)
    shipping = order.shipping
    if shipping is None:
        raise NotFound("Shipping record not found")
    if order.status == OrderStatus.cancelled:
        raise InvalidTransition("Cannot update shipping of a cancelled order")
    if data.status is not None and data.status != shipping.status:
        _check_transition("shipping", SHIPPING_TRANSITIONS, shipping.status, data.status)
        if data.status in FULFILMENT_STATUSES and order.status not in FULFILLABLE_ORDER_STATUSES:
            raise InvalidTransition(
                f"Cannot move shipping to {data.status.value} while the order is {order.status.value}"
            )
    with transaction(db):
        if data.tracking_number is not None:
            shipping.tracking_number = data.tracking_number
        if data.estimated_delivery is not None:
            shipping.estimated_delivery = data.estimated_delivery
        if data.status is not None and data.status != shipping.status:
            shipping.status = data.status
            if data.status == ShippingStatus.delivered:
                shipping.actual_delivery = utc_now()
            follow = {ShippingStatus.shipped: OrderStatus.shipped, ShippingStatus.delivered: OrderStatus.delivered}
            target = follow.get(data.status)
            if target is not None and target in ORDER_TRANSITIONS[order.status]:
                order.status = target
    return order


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------

def _refresh_rating(db: Session, product_id: uuid.UUID) -> None:
    average = db.scalar(select(func.avg(Review.rating)).where(Review.product_id == product_id))
    product = db.get(Product, product_id)
    product.rating = round(float(average or 0), 2)


def list_reviews(db: Session, product_id: uuid.UUID) -> List[Review]:
    get_product(db, product_id)
    return get_records(db, Review, Review.product_id == product_id, order_by=Review.created_at.desc())


def get_review(db: Session, review_id: uuid.UUID) -> Review:
    return _get(db, Review, review_id, "Review")


def create_review(db: Session, product_id: uuid.UUID, data: schemas.ReviewCreate) -> Review:
    product = get_product(db, product_id)
    if db.get(User, data.user_id) is None:
        raise ValidationFailed("User not found")
    review = Review(user_id=data.user_id, product_id=product.id, rating=data.rating, comment=data.comment)
    review.images = [ReviewImage(url=url, display_order=position) for position, url in enumerate(data.images)]
    with transaction(db):
        db.add(review)
        db.flush()
        _refresh_rating(db, product.id)
    logger.info("Review %s on product %s (%d stars)", review.id, product_id, data.rating)
    return review


def update_review(db: Session, review_id: uuid.UUID, data: schemas.ReviewUpdate) -> Review:
    review = get_review(db, review_id)
    with transaction(db):
        _apply(review, data, nullable=("comment",))
        db.flush()
        _refresh_rating(db, review.product_id)
    return review


def delete_review(db: Session, review_id: uuid.UUID) -> None:
    review = get_review(db, review_id)
    product_id = review.product_id
    with transaction(db):
        db.delete(review)
        db.flush()
        _refresh_rating(db, product_id)


# ---------------------------------------------------------------------------
# Wishlists
# ---------------------------------------------------------------------------

def list_wishlists(db: Session, user_id: uuid.UUID) -> List[Wishlist]:
    get_user(db, user_id)
    return get_records(db, Wishlist, Wishlist.user_id == user_id, order_by=Wishlist.created_at)


def get_wishlist(db: Session, wishlist_id: uuid.UUID) -> Wishlist:
    return _get(db, Wishlist, wishlist_id, "Wishlist")


def create_wishlist(db: Session, user_id: uuid.UUID, data: schemas.WishlistCreate) -> Wishlist:
    get_user(db, user_id)
    return create_record(db, Wishlist(user_id=user_id, **data.model_dump()))


def update_wishlist(db: Session, wishlist_id: uuid.UUID, data: schemas.WishlistUpdate) -> Wishlist:
    wishlist = get_wishlist(db, wishlist_id)
    with transaction(db):
        _apply(wishlist, data)
    return wishlist


def delete_wishlist(db: Session, wishlist_id: uuid.UUID) -> None:
    wishlist = get_wishlist(db, wishlist_id)
    with transaction(db):
        db.delete(wishlist)


def add_wishlist_item(db: Session, wishlist_id: uuid.UUID, product_id: uuid.UUID) -> Wishlist:
    wishlist = get_wishlist(db, wishlist_id)
    get_product(db, product_id)
    if any(item.product_id == product_id for item in wishlist.items):
        raise ConstraintViolation("Product is already in this wishlist")
    with transaction(db):
        wishlist.items.append(WishlistItem(product_id=product_id))
        wishlist.touch()
    return wishlist


def remove_wishlist_item(db: Session, wishlist_id: uuid.UUID, product_id: uuid.UUID) -> Wishlist:
    wishlist = get_wishlist(db, wishlist_id)
    item = next((i for i in wishlist.items if i.product_id == product_id), None)
    if item is None:
        raise NotFound("Product is not in this wishlist")
    with transaction(db):
        wishlist.items.remove(item)
        wishlist.touch()
    return wishlist


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

def analytics(db: Session) -> Dict[str, Any]:
    revenue = db.scalar(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(Payment.status == PaymentStatus.completed)
    )
    orders = db.scalar(select(func.count()).select_from(Order))
    by_status = {
        status.value: count
        for status, count in db.execute(select(Order.status, func.count()).group_by(Order.status))
    }
    units = func.sum(OrderItem.quantity)
    top_products = [
        {"product_id": str(product_id), "name": name, "units": int(sold)}
        for product_id, name, sold in db.execute(
            select(Product.id, Product.name, units)
            .join(OrderItem, OrderItem.product_id == Product.id)
            .group_by(Product.id, Product.name)
            .order_by(units.desc())
            .limit(5)
        )
    ]
    return {"revenue": int(revenue), "orders": orders, "ordersByStatus": by_status, "topProducts": top_products}


def seed_demo_data(db: Session) -> Dict[str, int]:
    """Create an admin, a small catalog and nothing else. Safe to call twice."""
    created = {"users": 0, "categories": 0, "products": 0}
    if db.scalar(select(User.id).where(User.email == "admin@storefront.dev")) is None:
        create_user(db, schemas.UserCreate(email="admin@storefront.dev", name="Admin", role=UserRole.admin))
        created["users"] += 1
    if db.scalar(select(func.count()).select_from(Category)) == 0:
        apparel = create_category(db, schemas.CategoryCreate(name="Apparel", description="Clothing"))
        electronics = create_category(db, schemas.CategoryCreate(name="Electronics", display_order=1))
        audio = create_category(db, schemas.CategoryCreate(name="Audio", parent_id=electronics.id))
        created["categories"] += 3
        create_product(
            db,
            schemas.ProductCreate(
                name="Classic Tee",
                description="Soft cotton tee",
                price=2000,
                category_id=apparel.id,
                stock=200,
                images=[schemas.ImageCreate(url="https://images.unsplash.com/photo-1520975682031-a1248f1a6386")],
                variants=[
                    schemas.VariantCreate(name="S / Black", price=2000, stock=100, attributes={"size": "S", "color": "Black"}),
                    schemas.VariantCreate(name="M / Black", price=2000, stock=100, attributes={"size": "M", "color": "Black"}),
                ],
                specifications={"material": "100% cotton"},
            ),
        )
        create_product(
            db,
            schemas.ProductCreate(
                name="Wireless Earbuds",
                description="Noise isolating, long battery life",
                price=5999,
                discount_price=4999,
                category_id=audio.id,
                stock=50,
                images=[schemas.ImageCreate(url="https://images.unsplash.com/photo-1585386959984-a41552231620")],
                specifications={"battery": "24h", "connectivity": "Bluetooth 5.3"},
            ),
        )
        created["products"] += 2
    logger.info("Seed: %s", created)
    return created
