"""
Driver connections implementing the event protocol of `tdatabase.driver`.

Drivers are imported on use so that the package works without the ODBC
libraries when a different driver is supplied.
"""
