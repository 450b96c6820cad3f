"""Shared fixtures: a small shop project with a snapshot, two models and tests."""

from __future__ import annotations

import textwrap

import duckdb
import pytest


@pytest.fixture
def project(tmp_path):
    """Create a project directory with landing data already loaded."""
    project_dir = tmp_path / "shop"
    for d in ["snapshots", "transform/gold"]:
        (project_dir / d).mkdir(parents=True, exist_ok=True)

    (project_dir / "project.yml").write_text(textwrap.dedent("""\
        name: shop
        database:
          path: warehouse.duckdb
        build:
          workers: 2
          retries: 0
    """))
    (project_dir / "sources.yml").write_text(textwrap.dedent("""\
        sources:
          - name: shop_db
            schema: landing
            tables:
              - name: products
              - name: orders
    """))

    (project_dir / "snapshots" / "products.sql").write_text(textwrap.dedent("""\
        -- config: unique_key=product_id, updated_at=updated_at
        -- description: Product price history
        -- assert: not_null(product_id)
        SELECT product_id, name, price, updated_at FROM landing.products
    """))
    (project_dir / "transform" / "gold" / "dim_product.sql").write_text(textwrap.dedent("""\
        -- config: materialized=table
        -- assert: unique(product_id)
        SELECT product_id, name, price
        FROM snapshots.products
        WHERE strata_valid_to IS NULL
    """))
    (project_dir / "transform" / "gold" / "fct_orders.sql").write_text(textwrap.dedent("""\
        -- config: materialized=table
        -- assert: relationships(product_id, gold.dim_product.product_id)
        -- warn: accepted_values(status, ['paid', 'refunded'])
        SELECT o.order_id, o.product_id, o.status, p.price
        FROM landing.orders o
        LEFT JOIN gold.dim_product p ON o.product_id = p.product_id
    """))

    conn = duckdb.connect(str(project_dir / "warehouse.duckdb"))
    conn.execute("CREATE SCHEMA landing")
    conn.execute(
        "CREATE TABLE landing.products AS SELECT * FROM (VALUES "
        "(1, 'kettle', 25.0, TIMESTAMP '2024-01-01'), "
        "(2, 'teapot', 40.0, TIMESTAMP '2024-01-01')) t(product_id, name, price, updated_at)"
    )
    conn.execute(
        "CREATE TABLE landing.orders AS SELECT * FROM (VALUES "
        "(100, 1, 'paid'), (101, 2, 'paid'), (102, 1, 'refunded')) t(order_id, product_id, status)"
    )
    conn.close()
    return project_dir
