"""Storage-facing records and table builders."""
