DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10


def normalize_page_args(page, limit):
    """Fall back to the defaults for missing or non-positive values."""
    page = page if isinstance(page, int) and page >= 1 else DEFAULT_PAGE
    limit = limit if isinstance(limit, int) and limit >= 1 else DEFAULT_LIMIT
    return page, limit


def pagination_meta(page, limit, total):
    total_pages = -(-total // limit) if total else 0
    return {
        'currentPage': page,
        'totalPages': total_pages,
        'totalCount': total,
        'limit': limit,
        'hasNextPage': page < total_pages,
        'hasPrevPage': page > 1,
    }


def paginate_query(query, page=DEFAULT_PAGE, limit=DEFAULT_LIMIT):
    """Run the count and the page fetch off the same filtered query.

    Returns (rows, pagination). The two reads are not snapshot-isolated, so
    a concurrent insert can make the count differ from what a later page shows.
    """
    page, limit = normalize_page_args(page, limit)
    result = query.paginate(page=page, per_page=limit, error_out=False, count=True)
    return result.items, pagination_meta(page, limit, result.total or 0)
