from fastapi import HTTPException


class QueryOptionsError(HTTPException):
    """Request options that cannot be turned into a query.

    Malformed options (unknown operator, bad relations parameter) are treated
    as a server-side failure of the request, bad filter values as a 400.
    """

    def __init__(self, detail: str, status_code: int = 500):
        super().__init__(status_code=status_code, detail=detail)


class RecordNotFound(HTTPException):
    def __init__(self, detail: str = "Record not found"):
        super().__init__(status_code=404, detail=detail)


def bad_filter_value(column_key: str, kind: str) -> QueryOptionsError:
    return QueryOptionsError(f'Invalid filter value for field "{column_key}" ({kind})', status_code=400)
