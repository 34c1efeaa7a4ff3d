"""POS terminal cart and checkout service."""
