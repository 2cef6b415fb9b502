"""
Module: ssp_modules
Responsibility:
    Stateful services and persistence for the SSP allocation and
    discounting engine.  Each subpackage follows the same shape:

        models.py   -- frozen DTOs and string-backed enums (zero I/O)
        orm.py      -- SQLAlchemy models with to_dto()/from_dto()
        service.py  -- session-holding service; owns commit/rollback

    Subpackages:
        catalog     -- SSP catalog entries, evidence, per-company policy
        bundles     -- bundle registry and component weights
        discounts   -- discount rules and the append-only application log
        allocation  -- per-invoice orchestration and the allocation audit
        compliance  -- advisory batch checks over catalog and policy

Architecture position:
    Modules layer.  Imports ssp_engines, ssp_kernel and ssp_config.
    Nothing below this layer imports it, except the kernel's
    create_tables() which pulls in _orm_registry lazily.
"""
