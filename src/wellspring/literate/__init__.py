"""Literate documents: Markdown with executable fragments, tracked as targets."""

from wellspring.literate.document import (
    OUTPUT_SUFFIX,
    Fragment,
    LiterateDocument,
    Prose,
    parse_blocks,
)

__all__ = [
    "OUTPUT_SUFFIX",
    "Fragment",
    "LiterateDocument",
    "Prose",
    "parse_blocks",
]
