"""One-shot bulk import of existing source resources."""

from kubemirror.importer.bulk_importer import BulkImporter, ImportSummary, KindSummary

__all__ = ["BulkImporter", "ImportSummary", "KindSummary"]
