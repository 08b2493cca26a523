"""
Database-specific exception classes.

Driver errors are raised unchanged; these classes cover the errors this
package raises itself.
"""


class DatabaseError(Exception):
    """Base class for all database module errors.
    """


class ConnectionFailure(DatabaseError):
    """Error establishing or maintaining database connection.
    """


class BulkLoadError(DatabaseError):
    """Error while loading rows through a bulk load session.
    """


class TransactionError(DatabaseError):
    """Error beginning, committing or rolling back a transaction.
    """


class ValidationError(DatabaseError):
    """Error in input validation.
    """


def error_message(exc: BaseException) -> str:
    """Return the human readable message of an exception.

    DB-API drivers such as pyodbc raise ``Error(sqlstate, message)``; the
    message is the second argument.
    """
    args = getattr(exc, 'args', ())
    if len(args) > 1 and isinstance(args[1], str):
        return args[1]
    return str(exc)
