import logging
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import config
import services
from database import get_db, init_db
from errors import StoreError, ValidationFailed
from models import ProductStatus
from schemas import (
    AddressCreate,
    AddressOut,
    AddressUpdate,
    CartItemCreate,
    CartItemOut,
    CartItemUpdate,
    CartOut,
    CategoryCreate,
    CategoryNode,
    CategoryOut,
    CategoryUpdate,
    CheckoutIn,
    ImageCreate,
    ImageOut,
    OrderOut,
    OrderStatusIn,
    PaymentUpdate,
    PreferencesOut,
    PreferencesUpdate,
    ProductCreate,
    ProductOut,
    ProductPage,
    ProductUpdate,
    ReviewCreate,
    ReviewOut,
    ReviewUpdate,
    ShippingUpdate,
    SpecificationIn,
    SpecificationOut,
    Totals,
    UserCreate,
    UserOut,
    UserUpdate,
    VariantCreate,
    VariantOut,
    VariantUpdate,
    WishlistCreate,
    WishlistItemIn,
    WishlistOut,
    WishlistUpdate,
)

# Logging
logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("storefront")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("%s API ready", config.STORE_NAME)
    yield


app = FastAPI(title=f"{config.STORE_NAME} API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in config.ALLOWED_ORIGINS] if config.ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handlers
@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def cart_out(cart) -> CartOut:
    return CartOut(
        id=cart.id,
        user_id=cart.user_id,
        items=[CartItemOut.model_validate(item) for item in cart.items],
        totals=Totals(**services.cart_totals(cart)),
        updated_at=cart.updated_at,
    )


def deleted(ident: uuid.UUID) -> dict:
    return {"id": str(ident), "deleted": True}


# Health and config
@app.get("/")
def root():
    return {"name": config.STORE_NAME, "status": "ok"}


@app.get("/config")
def get_config():
    return {
        "storeName": config.STORE_NAME,
        "currency": config.PRIMARY_CURRENCY,
        "taxRate": config.DEFAULT_TAX_RATE,
        "shipping": {
            "standard": config.SHIPPING_STANDARD,
            "express": config.SHIPPING_EXPRESS,
            "next_day": config.SHIPPING_NEXT_DAY,
        },
    }


# Users
@app.post("/users", response_model=UserOut, status_code=201)
def create_user(data: UserCreate, db: Session = Depends(get_db)):
    return UserOut.model_validate(services.create_user(db, data))


@app.get("/users", response_model=List[UserOut])
def list_users(limit: int = Query(100, ge=1, le=500), db: Session = Depends(get_db)):
    return [UserOut.model_validate(u) for u in services.list_users(db, limit)]


@app.get("/users/{user_id}", response_model=UserOut)
def get_user(user_id: uuid.UUID, db: Session = Depends(get_db)):
    return UserOut.model_validate(services.get_user(db, user_id))


@app.patch("/users/{user_id}", response_model=UserOut)
def update_user(user_id: uuid.UUID, data: UserUpdate, db: Session = Depends(get_db)):
    return UserOut.model_validate(services.update_user(db, user_id, data))


@app.delete("/users/{user_id}")
def delete_user(user_id: uuid.UUID, db: Session = Depends(get_db)):
    services.delete_user(db, user_id)
    return deleted(user_id)


@app.get("/users/{user_id}/preferences", response_model=PreferencesOut)
def get_preferences(user_id: uuid.UUID, db: Session = Depends(get_db)):
    return PreferencesOut.model_validate(services.get_preferences(db, user_id))


@app.patch("/users/{user_id}/preferences", response_model=PreferencesOut)
def update_preferences(user_id: uuid.UUID, data: PreferencesUpdate, db: Session = Depends(get_db)):
    return PreferencesOut.model_validate(services.update_preferences(db, user_id, data))


# Addresses
@app.get("/users/{user_id}/addresses", response_model=List[AddressOut])
def list_addresses(user_id: uuid.UUID, db: Session = Depends(get_db)):
    return [AddressOut.model_validate(a) for a in services.list_addresses(db, user_id)]


@app.post("/users/{user_id}/addresses", response_model=AddressOut, status_code=201)
def create_address(user_id: uuid.UUID, data: AddressCreate, db: Session = Depends(get_db)):
    return AddressOut.model_validate(services.create_address(db, user_id, data))


@app.patch("/users/{user_id}/addresses/{address_id}", response_model=AddressOut)
def update_address(user_id: uuid.UUID, address_id: uuid.UUID, data: AddressUpdate, db: Session = Depends(get_db)):
    return AddressOut.model_validate(services.update_address(db, user_id, address_id, data))


@app.delete("/users/{user_id}/addresses/{address_id}")
def delete_address(user_id: uuid.UUID, address_id: uuid.UUID, db: Session = Depends(get_db)):
    services.delete_address(db, user_id, address_id)
    return deleted(address_id)


# Categories
@app.get("/categories", response_model=List[CategoryOut])
def list_categories(active: bool = False, db: Session = Depends(get_db)):
    return [CategoryOut.model_validate(c) for c in services.list_categories(db, active_only=active)]


@app.get("/categories/tree", response_model=List[CategoryNode])
def category_tree(db: Session = Depends(get_db)):
    return [CategoryNode.model_validate(c) for c in services.category_tree(db)]


@app.post("/categories", response_model=CategoryOut, status_code=201)
def create_category(data: CategoryCreate, db: Session = Depends(get_db)):
    return CategoryOut.model_validate(services.create_category(db, data))


@app.patch("/categories/{category_id}", response_model=CategoryOut)
def update_category(category_id: uuid.UUID, data: CategoryUpdate, db: Session = Depends(get_db)):
    return CategoryOut.model_validate(services.update_category(db, category_id, data))


@app.delete("/categories/{category_id}")
def delete_category(category_id: uuid.UUID, db: Session = Depends(get_db)):
    services.delete_category(db, category_id)
    return deleted(category_id)


# Products
@app.get("/products", response_model=ProductPage)
def list_products(
    q: Optional[str] = None,
    category: Optional[uuid.UUID] = None,
    minPrice: Optional[int] = Query(None, ge=0),
    maxPrice: Optional[int] = Query(None, ge=0),
    status: str = "active",
    sort: Optional[str] = None,  # name, price_asc, price_desc, newest, rating
    limit: int = Query(24, ge=1, le=100),
    page: int = Query(1, ge=1),
    db: Session = Depends(get_db),
):
    if status != "any" and status not in {s.value for s in ProductStatus}:
        raise ValidationFailed(f"Unknown product status: {status}")
    items, total = services.list_products(
        db,
        q=q,
        category_id=category,
        min_price=minPrice,
        max_price=maxPrice,
        status=None if status == "any" else status,
        sort=sort,
        limit=limit,
        page=page,
    )
    return ProductPage(items=[ProductOut.model_validate(p) for p in items], total=total, page=page, limit=limit)


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: uuid.UUID, db: Session = Depends(get_db)):
    return ProductOut.model_validate(services.get_product(db, product_id))


@app.post("/products", response_model=ProductOut, status_code=201)
def create_product(data: ProductCreate, db: Session = Depends(get_db)):
    return ProductOut.model_validate(services.create_product(db, data))


@app.patch("/products/{product_id}", response_model=ProductOut)
def update_product(product_id: uuid.UUID, data: ProductUpdate, db: Session = Depends(get_db)):
    return ProductOut.model_validate(services.update_product(db, product_id, data))


@app.delete("/products/{product_id}")
def delete_product(product_id: uuid.UUID, db: Session = Depends(get_db)):
    services.delete_product(db, product_id)
    return deleted(product_id)


@app.post("/products/{product_id}/archive", response_model=ProductOut)
def archive_product(product_id: uuid.UUID, db: Session = Depends(get_db)):
    return ProductOut.model_validate(services.archive_product(db, product_id))


@app.post("/products/{product_id}/images", response_model=ImageOut, status_code=201)
def add_product_image(product_id: uuid.UUID, data: ImageCreate, db: Session = Depends(get_db)):
    return ImageOut.model_validate(services.add_product_image(db, product_id, data))


@app.post("/products/{product_id}/variants", response_model=VariantOut, status_code=201)
def add_variant(product_id: uuid.UUID, data: VariantCreate, db: Session = Depends(get_db)):
    return VariantOut.model_validate(services.add_variant(db, product_id, data))


@app.patch("/products/{product_id}/variants/{variant_id}", response_model=VariantOut)
def update_variant(product_id: uuid.UUID, variant_id: uuid.UUID, data: VariantUpdate, db: Session = Depends(get_db)):
    return VariantOut.model_validate(services.update_variant(db, product_id, variant_id, data))


@app.delete("/products/{product_id}/variants/{variant_id}")
def delete_variant(product_id: uuid.UUID, variant_id: uuid.UUID, db: Session = Depends(get_db)):
    services.delete_variant(db, product_id, variant_id)
    return deleted(variant_id)


@app.put("/products/{product_id}/specifications/{key}", response_model=SpecificationOut)
def set_specification(product_id: uuid.UUID, key: str, data: SpecificationIn, db: Session = Depends(get_db)):
    return SpecificationOut.model_validate(services.set_specification(db, product_id, key, data.value))


@app.delete("/products/{product_id}/specifications/{key}")
def delete_specification(product_id: uuid.UUID, key: str, db: Session = Depends(get_db)):
    services.delete_specification(db, product_id, key)
    return {"key": key, "deleted": True}


# Reviews
@app.get("/products/{product_id}/reviews", response_model=List[ReviewOut])
def list_reviews(product_id: uuid.UUID, db: Session = Depends(get_db)):
    return [ReviewOut.model_validate(r) for r in services.list_reviews(db, product_id)]


@app.post("/products/{product_id}/reviews", response_model=ReviewOut, status_code=201)
def create_review(product_id: uuid.UUID, data: ReviewCreate, db: Session = Depends(get_db)):
    return ReviewOut.model_validate(services.create_review(db, product_id, data))


@app.patch("/reviews/{review_id}", response_model=ReviewOut)
def update_review(review_id: uuid.UUID, data: ReviewUpdate, db: Session = Depends(get_db)):
    return ReviewOut.model_validate(services.update_review(db, review_id, data))


@app.delete("/reviews/{review_id}")
def delete_review(review_id: uuid.UUID, db: Session = Depends(get_db)):
    services.delete_review(db, review_id)
    return deleted(review_id)


# Cart
@app.get("/users/{user_id}/cart", response_model=CartOut)
def get_cart(user_id: uuid.UUID, db: Session = Depends(get_db)):
    return cart_out(services.get_cart(db, user_id))


@app.post("/users/{user_id}/cart/items", response_model=CartOut)
def add_cart_item(user_id: uuid.UUID, data: CartItemCreate, db: Session = Depends(get_db)):
    return cart_out(services.add_cart_item(db, user_id, data))


@app.patch("/users/{user_id}/cart/items/{item_id}", response_model=CartOut)
def update_cart_item(user_id: uuid.UUID, item_id: uuid.UUID, data: CartItemUpdate, db: Session = Depends(get_db)):
    return cart_out(services.update_cart_item(db, user_id, item_id, data.quantity))


@app.delete("/users/{user_id}/cart/items/{item_id}", response_model=CartOut)
def remove_cart_item(user_id: uuid.UUID, item_id: uuid.UUID, db: Session = Depends(get_db)):
    return cart_out(services.remove_cart_item(db, user_id, item_id))


@app.delete("/users/{user_id}/cart", response_model=CartOut)
def clear_cart(user_id: uuid.UUID, db: Session = Depends(get_db)):
    return cart_out(services.clear_cart(db, user_id))


# Checkout
@app.post("/users/{user_id}/checkout", response_model=OrderOut, status_code=201)
def checkout(user_id: uuid.UUID, data: CheckoutIn, db: Session = Depends(get_db)):
    return OrderOut.model_validate(services.checkout(db, user_id, data))


# Orders
@app.get("/users/{user_id}/orders", response_model=List[OrderOut])
def list_orders(user_id: uuid.UUID, db: Session = Depends(get_db)):
    return [OrderOut.model_validate(o) for o in services.list_orders(db, user_id)]


@app.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: uuid.UUID, db: Session = Depends(get_db)):
    return OrderOut.model_validate(services.get_order(db, order_id))


@app.post("/orders/{order_id}/status", response_model=OrderOut)
def update_order_status(order_id: uuid.UUID, data: OrderStatusIn, db: Session = Depends(get_db)):
    return OrderOut.model_validate(services.set_order_status(db, order_id, data.status))


@app.post("/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(order_id: uuid.UUID, db: Session = Depends(get_db)):
    return OrderOut.model_validate(services.cancel_order(db, order_id))


@app.post("/orders/{order_id}/payment", response_model=OrderOut)
def update_payment(order_id: uuid.UUID, data: PaymentUpdate, db: Session = Depends(get_db)):
    return OrderOut.model_validate(services.update_payment(db, order_id, data))


@app.patch("/orders/{order_id}/shipping", response_model=OrderOut)
def update_shipping(order_id: uuid.UUID, data: ShippingUpdate, db: Session = Depends(get_db)):
    return OrderOut.model_validate(services.update_shipping(db, order_id, data))


# Wishlists
@app.get("/users/{user_id}/wishlists", response_model=List[WishlistOut])
def list_wishlists(user_id: uuid.UUID, db: Session = Depends(get_db)):
    return [WishlistOut.model_validate(w) for w in services.list_wishlists(db, user_id)]


@app.post("/users/{user_id}/wishlists", response_model=WishlistOut, status_code=201)
def create_wishlist(user_id: uuid.UUID, data: WishlistCreate, db: Session = Depends(get_db)):
    return WishlistOut.model_validate(services.create_wishlist(db, user_id, data))


@app.get("/wishlists/{wishlist_id}", response_model=WishlistOut)
def get_wishlist(wishlist_id: uuid.UUID, db: Session = Depends(get_db)):
    return WishlistOut.model_validate(services.get_wishlist(db, wishlist_id))


@app.patch("/wishlists/{wishlist_id}", response_model=WishlistOut)
def update_wishlist(wishlist_id: uuid.UUID, data: WishlistUpdate, db: Session = Depends(get_db)):
    return WishlistOut.model_validate(services.update_wishlist(db, wishlist_id, data))


@app.delete("/wishlists/{wishlist_id}")
def delete_wishlist(wishlist_id: uuid.UUID, db: Session = Depends(get_db)):
    services.delete_wishlist(db, wishlist_id)
    return deleted(wishlist_id)


@app.post("/wishlists/{wishlist_id}/items", response_model=WishlistOut)
def add_wishlist_item(wishlist_id: uuid.UUID, data: WishlistItemIn, db: Session = Depends(get_db)):
    return WishlistOut.model_validate(services.add_wishlist_item(db, wishlist_id, data.product_id))


@app.delete("/wishlists/{wishlist_id}/items/{product_id}", response_model=WishlistOut)
def remove_wishlist_item(wishlist_id: uuid.UUID, product_id: uuid.UUID, db: Session = Depends(get_db)):
    return WishlistOut.model_validate(services.remove_wishlist_item(db, wishlist_id, product_id))


# Admin analytics
@app.get("/admin/analytics")
def analytics(db: Session = Depends(get_db)):
    return services.analytics(db)


# Sample seed endpoint (dev only)
@app.post("/dev/seed")
def seed(db: Session = Depends(get_db)):
    return {"ok": True, "created": services.seed_demo_data(db)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
