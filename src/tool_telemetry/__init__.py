__version__ = "0.1.0"

__all__ = ["TelemetryIngestor", "UsageRollupEngine", "canonicalize_vendor", "flatten_attributes"]


def __getattr__(name):
    if name == "TelemetryIngestor":
        from .ingest import TelemetryIngestor
        return TelemetryIngestor
    if name == "UsageRollupEngine":
        from .rollup import UsageRollupEngine
        return UsageRollupEngine
    if name == "canonicalize_vendor":
        from .vendors import canonicalize_vendor
        return canonicalize_vendor
    if name == "flatten_attributes":
        from .attributes import flatten_attributes
        return flatten_attributes
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
