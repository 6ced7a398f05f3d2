class Collections:
    PRODUCTS = "products"
    CATEGORIES = "categories"
    CARTS = "carts"
    CART_ITEMS = "cart_items"
    ORDERS = "orders"
    ORDER_ITEMS = "order_items"
    PAYMENT_TRANSACTIONS = "payment_transactions"
    SHIPPING_METHODS = "shipping_methods"
    ORDER_STATUS_HISTORY = "order_status_history"
    ORDER_TRACKING = "order_tracking"
    ORDER_NOTIFICATIONS = "order_notifications"
    ORDER_RETURNS = "order_returns"
    REVIEWS = "reviews"
    REVIEW_VOTES = "review_votes"
    REVIEW_REPORTS = "review_reports"
    WISHLIST = "wishlist"
    BLOG_POSTS = "blog_posts"
    BLOG_CATEGORIES = "blog_categories"
    BLOG_COMMENTS = "blog_comments"
    PROMOTIONAL_CONTENT = "promotional_content"
    NEWSLETTER_SUBSCRIBERS = "newsletter_subscribers"
    CONTENT_ANALYTICS = "content_analytics"

    ALL = (
        PRODUCTS,
        CATEGORIES,
        CARTS,
        CART_ITEMS,
        ORDERS,
        ORDER_ITEMS,
        PAYMENT_TRANSACTIONS,
        SHIPPING_METHODS,
        ORDER_STATUS_HISTORY,
        ORDER_TRACKING,
        ORDER_NOTIFICATIONS,
        ORDER_RETURNS,
        REVIEWS,
        REVIEW_VOTES,
        REVIEW_REPORTS,
        WISHLIST,
        BLOG_POSTS,
        BLOG_CATEGORIES,
        BLOG_COMMENTS,
        PROMOTIONAL_CONTENT,
        NEWSLETTER_SUBSCRIBERS,
        CONTENT_ANALYTICS,
    )


class Roles:
    USER = "user"
    ADMIN = "admin"
    AUTHOR = "author"


class OrderStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    REFUNDED = "refunded"

    ALL = (
        PENDING,
        CONFIRMED,
        PROCESSING,
        SHIPPED,
        OUT_FOR_DELIVERY,
        DELIVERED,
        CANCELLED,
        RETURNED,
        REFUNDED,
    )
    CANCELLABLE = (PENDING, CONFIRMED)
    RETURNABLE = (DELIVERED, SHIPPED)


class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class ReturnStatus:
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSED = "processed"
    COMPLETED = "completed"
    REJECTED = "rejected"

    ALL = (PENDING, APPROVED, PROCESSED, COMPLETED, REJECTED)


class ReportStatus:
    PENDING = "pending"
    REVIEWED = "reviewed"
    RESOLVED = "resolved"

    ALL = (PENDING, REVIEWED, RESOLVED)


CART_TAX_RATE = 0.08
CART_FREE_SHIPPING_THRESHOLD = 50.0
CART_FLAT_SHIPPING = 5.99
CART_MAX_QUANTITY = 99

CHECKOUT_TAX_RATE = 0.18
DEFAULT_ITEM_WEIGHT_KG = 0.5
PRICE_TOLERANCE = 0.01
CURRENCY = "INR"

REVIEW_EDIT_WINDOW_DAYS = 30
TRACKING_ETA_DAYS = 7
WORDS_PER_MINUTE = 200

RETURN_REASONS = (
    "Wrong item received",
    "Item damaged",
    "Item not as described",
    "Size doesn't fit",
    "Changed my mind",
    "Duplicate order",
    "Quality issues",
    "Other",
)

REFUND_METHODS = (
    {"id": "original_payment_method", "name": "Original Payment Method"},
    {"id": "store_credit", "name": "Store Credit"},
    {"id": "bank_transfer", "name": "Bank Transfer"},
    {"id": "check", "name": "Check"},
)

PAYMENT_METHODS = (
    {
        "id": "razorpay",
        "name": "Razorpay",
        "description": "Pay with UPI, cards, net banking, or wallets",
        "enabled": True,
    },
    {
        "id": "cod",
        "name": "Cash on Delivery",
        "description": "Pay when you receive your order",
        "enabled": True,
    },
)

COURIERS = {
    "delhivery": {
        "id": "delhivery",
        "name": "Delhivery",
        "api_url": "https://api.delhivery.com",
        "tracking_url": "https://www.delhivery.com/track/package/{tracking_number}",
    },
    "bluedart": {
        "id": "bluedart",
        "name": "Blue Dart",
        "api_url": "https://api.bluedart.com",
        "tracking_url": "https://www.bluedart.com/tracking?awb={tracking_number}",
    },
}

NOTIFICATION_TYPES = ("email", "sms", "push")

DEFAULT_SHIPPING_METHODS = (
    {
        "id": "standard",
        "name": "Standard Shipping",
        "description": "Delivered in 5-7 business days",
        "base_rate": 0.0,
        "weight_rate": 0.0,
        "estimated_days_min": 5,
        "estimated_days_max": 7,
        "is_active": True,
    },
    {
        "id": "express",
        "name": "Express Shipping",
        "description": "Delivered in 1-3 business days",
        "base_rate": 99.0,
        "weight_rate": 20.0,
        "estimated_days_min": 1,
        "estimated_days_max": 3,
        "is_active": True,
    },
)

DEFAULT_CATEGORIES = (
    {"id": "cat-home", "name": "Home Textiles", "slug": "home-textiles", "parent_id": None, "sort_order": 1},
    {"id": "cat-bedding", "name": "Bedding", "slug": "bedding", "parent_id": "cat-home", "sort_order": 1},
    {"id": "cat-bath", "name": "Bath", "slug": "bath", "parent_id": "cat-home", "sort_order": 2},
    {"id": "cat-apparel", "name": "Apparel", "slug": "apparel", "parent_id": None, "sort_order": 2},
)
