from catalog_backend.migrations.runner import upgrade_to_head

__all__ = ["upgrade_to_head"]
