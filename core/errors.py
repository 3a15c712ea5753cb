"""
Error taxonomy for the Shapefile feature store.

Every error that crosses a public boundary is a ShapefileError carrying a
machine-readable ``kind`` and a human-readable ``message`` so callers (the
CLI, a service, a test) can branch on the kind.
"""


class ShapefileError(Exception):
    """Base class of all structured store errors."""

    kind = 'ShapefileError'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f"{self.kind}: {self.message}"

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'message': self.message}


class MalformedGeometry(ShapefileError):
    """The geometry file (or one of its records) cannot be decoded."""
    kind = 'MalformedGeometry'


class MalformedAttributes(ShapefileError):
    """The attribute table header or rows are inconsistent."""
    kind = 'MalformedAttributes'


class DatasetNotFound(ShapefileError):
    kind = 'DatasetNotFound'


class SchemaConflict(ShapefileError):
    """A dataset already exists at the path with an incompatible schema."""
    kind = 'SchemaConflict'


class SchemaMismatch(ShapefileError):
    """A feature does not fit the store's schema."""
    kind = 'SchemaMismatch'


class InvalidSchema(ShapefileError):
    """A schema definition violates field naming or width rules."""
    kind = 'InvalidSchema'


class InvalidFilterSyntax(ShapefileError):
    kind = 'InvalidFilterSyntax'


class TypeMismatch(ShapefileError):
    """A filter compares a field with an operator or literal of the wrong type."""
    kind = 'TypeMismatch'


class InvalidDistance(ShapefileError):
    kind = 'InvalidDistance'


class UnsupportedGeometryMix(ShapefileError):
    """GeoJSON input cannot be narrowed to one Shapefile geometry type."""
    kind = 'UnsupportedGeometryMix'


class DatasetLocked(ShapefileError):
    """Another write transaction is active on the same dataset."""
    kind = 'DatasetLocked'


class CommitFailed(ShapefileError):
    kind = 'CommitFailed'


class TransactionInactive(ShapefileError):
    """A write was attempted on a transaction that is no longer active."""
    kind = 'TransactionInactive'
