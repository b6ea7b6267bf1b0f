"""Pure utility helpers: hashing and monetary rounding."""
