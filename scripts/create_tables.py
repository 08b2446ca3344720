#!/usr/bin/env python3
"""Create the order reconciliation tables for Marketplace Order Sync."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. users (owned by the marketplace app; only the columns read here)
CREATE TABLE IF NOT EXISTS users (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    wallet_address VARCHAR(64),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 2. listings (owned by the marketplace app; reconciliation mutates availability)
CREATE TABLE IF NOT EXISTS listings (
    id TEXT PRIMARY KEY,
    title TEXT,
    description TEXT,
    price NUMERIC(12, 2),
    image_url TEXT,
    ordered_by_user_id UUID REFERENCES users(id),
    status VARCHAR(20) NOT NULL DEFAULT 'available',
    shopify_product_id TEXT,
    purchased_at TIMESTAMPTZ,
    purchaser_email TEXT,
    purchaser_wallet_address VARCHAR(64),
    total_orders INTEGER NOT NULL DEFAULT 0,
    total_revenue NUMERIC(14, 2) NOT NULL DEFAULT 0,
    last_order_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_listings_shopify_product_id ON listings(shopify_product_id);

-- 3. shopify_orders
CREATE TABLE IF NOT EXISTS shopify_orders (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    shopify_order_id BIGINT UNIQUE NOT NULL,
    shopify_checkout_id TEXT,
    listing_id TEXT REFERENCES listings(id),
    purchaser_wallet_address VARCHAR(64) NOT NULL DEFAULT 'unknown',
    creator_wallet_address VARCHAR(64) NOT NULL DEFAULT 'unknown',
    order_status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (order_status IN ('pending', 'paid', 'fulfilled', 'cancelled', 'refunded')),
    financial_status VARCHAR(40),
    fulfillment_status VARCHAR(40),
    total_price NUMERIC(12, 2),
    currency VARCHAR(3),
    shopify_customer_id BIGINT,
    shopify_customer_email TEXT,
    shipping_address JSONB,
    line_items JSONB,
    webhook_events JSONB NOT NULL DEFAULT '[]'::jsonb,
    claimed_at TIMESTAMPTZ,
    claim_amount NUMERIC(12, 2),
    cancelled_at TIMESTAMPTZ,
    cancel_reason TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_shopify_orders_checkout_id ON shopify_orders(shopify_checkout_id);
CREATE INDEX IF NOT EXISTS idx_shopify_orders_purchaser ON shopify_orders(lower(purchaser_wallet_address));
CREATE INDEX IF NOT EXISTS idx_shopify_orders_creator ON shopify_orders(lower(creator_wallet_address));

-- 4. fulfillment_tracking
CREATE TABLE IF NOT EXISTS fulfillment_tracking (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    shopify_order_id BIGINT NOT NULL REFERENCES shopify_orders(shopify_order_id),
    shopify_fulfillment_id BIGINT UNIQUE NOT NULL,
    tracking_company TEXT,
    tracking_number TEXT,
    tracking_url TEXT,
    shipment_status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (shipment_status IN ('pending', 'in_transit', 'delivered', 'exception')),
    shipped_at TIMESTAMPTZ,
    estimated_delivery TIMESTAMPTZ,
    delivered_at TIMESTAMPTZ,
    location_updates JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_fulfillment_tracking_order_id ON fulfillment_tracking(shopify_order_id);

-- 5. webhook_logs
CREATE TABLE IF NOT EXISTS webhook_logs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    webhook_topic VARCHAR(50) NOT NULL,
    shopify_order_id BIGINT,
    webhook_id TEXT,
    event_id TEXT NOT NULL,
    shop_domain TEXT,
    payload JSONB NOT NULL,
    processed BOOLEAN NOT NULL DEFAULT FALSE,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_webhook_logs_event_id ON webhook_logs(event_id);
CREATE INDEX IF NOT EXISTS idx_webhook_logs_processed ON webhook_logs(event_id) WHERE processed;
"""


def main():
    if not DATABASE_URL:
        print("ERROR: DATABASE_URL not set")
        return 1

    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    cur.execute("""
        SELECT table_name FROM information_schema.tables
        WHERE table_schema = 'public'
        AND table_name IN ('users', 'listings', 'shopify_orders', 'fulfillment_tracking', 'webhook_logs')
        ORDER BY table_name
    """)
    tables = [row[0] for row in cur.fetchall()]

    cur.close()
    conn.close()

    print(f"Created {len(tables)} tables:")
    for table in tables:
        print(f"  - {table}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
