"""
Document storage and versioning.

Upload path: stage bytes on local disk, commit them to the object store under an
opaque key, then append a version to the document's chain in the catalog.
The catalog is only written after the object store confirmed the write.
"""
