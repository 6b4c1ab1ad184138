__all__ = ["CatalogSettings", "load_catalog_settings"]


def __getattr__(name: str):
    if name in __all__:
        from . import settings

        return getattr(settings, name)
    raise AttributeError(name)
