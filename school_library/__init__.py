"""School library lending core.

Catalog of titles and copies, student directory, lending ledger with due
dates and fines, overdue sweep with automatic blacklisting, and an audit
trail, exposed through :class:`school_library.library.Library`, a FastAPI
app (:mod:`school_library.api`) and a Typer CLI (:mod:`school_library.main`).
"""

__version__ = "1.0.0"
