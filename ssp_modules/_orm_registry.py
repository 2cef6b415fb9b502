"""
Module ORM Registry (``ssp_modules._orm_registry``).

Responsibility
--------------
Ensure every module-level SQLAlchemy ORM model is imported so that
``Base.metadata`` contains their table definitions before
``create_tables()`` runs.  Discount applications reference allocation
audits, so all modules must be registered together.

Usage
-----
``ssp_kernel.db.engine.create_tables()`` calls
``import_all_orm_models()`` before ``Base.metadata.create_all()``.
"""


def import_all_orm_models() -> None:
    """Import every ``ssp_modules.*.orm`` module.  Idempotent."""
    # fmt: off
    import ssp_modules.allocation.orm  # noqa: F401
    import ssp_modules.bundles.orm  # noqa: F401
    import ssp_modules.catalog.orm  # noqa: F401
    import ssp_modules.discounts.orm  # noqa: F401
