"""Query, Bases, formula and façade services built on the index store."""
