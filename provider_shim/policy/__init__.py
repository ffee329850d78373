"""Provider routing policy: schema, loading, merging and request checks."""
