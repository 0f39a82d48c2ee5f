"""Schema-level rules, exercised through a SQLAlchemy session without the API."""
import pytest
from sqlalchemy import func, select, text

from database import transaction
from errors import ConcurrentUpdate, ConstraintViolation, ValidationFailed
from models import (
    Address,
    AddressType,
    Cart,
    CartItem,
    Category,
    Order,
    OrderItem,
    Product,
    ProductImage,
    ProductSpecification,
    ProductVariant,
    Review,
    User,
    UserPreferences,
    Wishlist,
    WishlistItem,
)


def count(db, model):
    return db.scalar(select(func.count()).select_from(model))


@pytest.fixture
def shopper(db):
    user = User(email="grace@storefront.io", name="Grace Hopper")
    user.preferences = UserPreferences()
    user.cart = Cart()
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def novel(db):
    product = Product(
        name="Novel",
        description="A long story",
        price=1500,
        stock=10,
        category=Category(name="Books"),
    )
    product.images = [ProductImage(url="https://cdn.storefront.io/novel.jpg")]
    product.variants = [ProductVariant(name="Hardcover", price=2500, stock=4, attributes={"binding": "hard"})]
    product.specifications = [ProductSpecification(key="pages", value="412")]
    db.add(product)
    db.commit()
    return product


def place_order(db, user, product, address=None):
    order = Order(
        user_id=user.id,
        shipping_address_id=address.id if address else None,
        billing_address_id=address.id if address else None,
        shipping_address_snapshot=address.snapshot() if address else {},
        billing_address_snapshot=address.snapshot() if address else {},
        subtotal=product.price,
        tax=105,
        shipping_cost=500,
        total=product.price + 105 + 500,
    )
    order.items = [OrderItem(product_id=product.id, quantity=1, price=product.price, name=product.name)]
    db.add(order)
    db.commit()
    return order


def test_defaults_are_applied(db, shopper, novel):
    prefs = db.get(UserPreferences, shopper.id)
    assert (prefs.theme, prefs.language, prefs.currency) == ("system", "en", "USD")
    assert prefs.email_notifications and not prefs.sms_notifications
    assert novel.status == "active"
    assert novel.rating == 0
    assert shopper.role.value == "customer"
    assert shopper.created_at.tzinfo is not None


@pytest.mark.parametrize("rating", [0, 6, -1])
def test_review_rating_outside_range_is_rejected(db, shopper, novel, rating):
    user_id, product_id = shopper.id, novel.id
    with pytest.raises(ValidationFailed) as excinfo:
        with transaction(db):
            db.add(Review(user_id=user_id, product_id=product_id, rating=rating))
    assert not isinstance(excinfo.value, ConstraintViolation)
    assert count(db, Review) == 0


def test_review_rating_in_range_is_accepted(db, shopper, novel):
    with transaction(db):
        db.add_all([Review(user_id=shopper.id, product_id=novel.id, rating=r) for r in (1, 5)])
    assert count(db, Review) == 2


def test_unknown_enum_value_is_rejected_by_store(db):
    with pytest.raises(ValidationFailed):
        with transaction(db):
            db.execute(
                text("INSERT INTO users (id, email, name, role, created_at, updated_at) "
                     "VALUES ('0123456789abcdef0123456789abcdef', 'x@storefront.io', 'X', 'superuser', "
                     "'2026-01-01 00:00:00', '2026-01-01 00:00:00')")
            )
    assert count(db, User) == 0


def test_duplicate_email_is_rejected(db, shopper):
    with pytest.raises(ConstraintViolation):
        with transaction(db):
            db.add(User(email="grace@storefront.io", name="Impostor"))


def test_one_cart_per_user(db, shopper):
    user_id = shopper.id
    with pytest.raises(ConstraintViolation):
        with transaction(db):
            db.add(Cart(user_id=user_id))


@pytest.mark.parametrize("with_variant", [False, True])
def test_cart_pair_is_unique_in_store(db, shopper, novel, with_variant):
    cart_id = shopper.cart.id
    variant_id = novel.variants[0].id if with_variant else None
    with transaction(db):
        db.add(CartItem(cart_id=cart_id, product_id=novel.id, variant_id=variant_id, quantity=1))
    with pytest.raises(ConstraintViolation):
        with transaction(db):
            db.add(CartItem(cart_id=cart_id, product_id=novel.id, variant_id=variant_id, quantity=2))
    assert count(db, CartItem) == 1


def test_cart_quantity_must_be_positive(db, shopper, novel):
    cart_id, product_id = shopper.cart.id, novel.id
    with pytest.raises(ValidationFailed):
        with transaction(db):
            db.add(CartItem(cart_id=cart_id, product_id=product_id, quantity=0))


def test_specification_key_is_unique_per_product(db, novel):
    product_id = novel.id
    with pytest.raises(ConstraintViolation):
        with transaction(db):
            db.add(ProductSpecification(product_id=product_id, key="pages", value="413"))


def test_wishlist_product_is_unique(db, shopper, novel):
    wishlist = Wishlist(user_id=shopper.id, name="Later")
    wishlist.items = [WishlistItem(product_id=novel.id)]
    db.add(wishlist)
    db.commit()
    wishlist_id, product_id = wishlist.id, novel.id
    with pytest.raises(ConstraintViolation):
        with transaction(db):
            db.add(WishlistItem(wishlist_id=wishlist_id, product_id=product_id))


def test_default_address_is_unique_per_type(db, shopper):
    fields = dict(street="1 Main St", city="Springfield", state="IL", country="US", postal_code="62701")
    with transaction(db):
        db.add(Address(user_id=shopper.id, type=AddressType.shipping, is_default=True, **fields))
        db.add(Address(user_id=shopper.id, type=AddressType.billing, is_default=True, **fields))
        db.add(Address(user_id=shopper.id, type=AddressType.shipping, is_default=False, **fields))
    user_id = shopper.id
    with pytest.raises(ConstraintViolation):
        with transaction(db):
            db.add(Address(user_id=user_id, type=AddressType.shipping, is_default=True, **fields))


def test_deleting_user_cascades_personal_data_and_keeps_history(db, shopper, novel):
    address = Address(
        user_id=shopper.id, type=AddressType.shipping, street="1 Main St", city="Springfield",
        state="IL", country="US", postal_code="62701", is_default=True,
    )
    db.add(address)
    db.add(CartItem(cart_id=shopper.cart.id, product_id=novel.id, quantity=1))
    wishlist = Wishlist(user_id=shopper.id, name="Later", items=[WishlistItem(product_id=novel.id)])
    db.add(wishlist)
    db.add(Review(user_id=shopper.id, product_id=novel.id, rating=4, comment="Good"))
    db.commit()
    order = place_order(db, shopper, novel, address)
    order_id = order.id

    with transaction(db):
        db.delete(shopper)

    for model in (User, UserPreferences, Address, Cart, CartItem, Wishlist, WishlistItem):
        assert count(db, model) == 0, model.__name__
    kept = db.get(Order, order_id)
    assert kept is not None
    assert kept.user_id is None
    assert kept.shipping_address_id is None
    assert kept.shipping_address_snapshot["street"] == "1 Main St"
    assert len(kept.items) == 1
    review = db.scalar(select(Review))
    assert review.user_id is None and review.comment == "Good"


def test_deleting_referenced_product_is_rejected(db, shopper, novel):
    place_order(db, shopper, novel)
    product_id = novel.id
    with pytest.raises(ConstraintViolation):
        with transaction(db):
            db.delete(novel)
    assert db.get(Product, product_id) is not None
    assert count(db, ProductVariant) == 1


def test_deleting_product_reviewed_is_rejected(db, shopper, novel):
    db.add(Review(user_id=shopper.id, product_id=novel.id, rating=3))
    db.commit()
    with pytest.raises(ConstraintViolation):
        with transaction(db):
            db.delete(novel)


def test_deleting_unreferenced_product_cascades(db, novel):
    with transaction(db):
        db.delete(novel)
    for model in (Product, ProductImage, ProductVariant, ProductSpecification):
        assert count(db, model) == 0, model.__name__
    assert count(db, Category) == 1


def test_deleting_category_with_children_is_rejected(db):
    parent = Category(name="Electronics")
    parent.children = [Category(name="Audio")]
    db.add(parent)
    db.commit()
    with pytest.raises(ConstraintViolation):
        with transaction(db):
            db.delete(parent)
    assert count(db, Category) == 2


def test_updated_at_advances_on_change_and_not_on_read(db, shopper):
    before = shopper.updated_at
    db.expire_all()
    assert db.get(User, shopper.id).updated_at == before

    shopper.name = "Rear Admiral Hopper"
    db.commit()
    changed = shopper.updated_at
    assert changed > before

    # re-assigning the loaded value is not a mutation
    assert shopper.name == "Rear Admiral Hopper"
    shopper.name = "Rear Admiral Hopper"
    db.commit()
    assert shopper.updated_at == changed

    shopper.phone = "555-0100"
    db.commit()
    assert shopper.updated_at > changed


def test_updated_at_strictly_increases_on_rapid_writes(db, novel):
    stamps = []
    for stock in range(5):
        novel.stock = stock
        db.commit()
        stamps.append(novel.updated_at)
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


def test_stale_cart_write_is_a_conflict(session_factory, db, shopper):
    first, second = session_factory(), session_factory()
    try:
        cart_a = first.scalar(select(Cart))
        cart_b = second.scalar(select(Cart))
        cart_a.touch()
        first.commit()
        with pytest.raises(ConcurrentUpdate):
            with transaction(second):
                cart_b.touch()
    finally:
        first.close()
        second.close()
