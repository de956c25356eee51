"""Provide utilities that should not be aware of vaultsync."""
import inspect
import os
import posixpath
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

T = TypeVar("T")

_os_alt_seps: List[str] = list(
    sep for sep in [os.path.sep, os.path.altsep] if sep is not None and sep != "/"
)


async def safe_call_callback(callback: Optional[Callable], *args: Any) -> Any:
    """Call a callback, handling None and sync/async functions."""
    if not callback:
        return None
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def paginate(
    request: dict,
    fetch: Callable[[dict], Awaitable[dict]],
    token_key: str = "NextContinuationToken",
    request_token_key: str = "ContinuationToken",
) -> List[dict]:
    """Fetch every page of a paginated API call.

    Each response's `token_key` is copied into the next request under
    `request_token_key` until a response comes back without one.
    Returns the list of raw responses in order.
    """
    pages = []
    current = dict(request)
    while True:
        response = await fetch(current)
        pages.append(response)
        token = response.get(token_key)
        if not token:
            break
        current = {**current, request_token_key: token}
    return pages


async def batch(
    items: Sequence[T],
    size: int,
    process: Callable[[List[T]], Awaitable[None]],
) -> None:
    """Process items sequentially in chunks of at most `size`."""
    assert size > 0, "Batch size must be positive"
    for i in range(0, len(items), size):
        await process(list(items[i : i + size]))


def safe_join(directory: str, *pathnames: str) -> str:
    """Safely join zero or more untrusted path components to a base directory.

    This avoids escaping the base directory.
    :param directory: The trusted base directory.
    :param pathnames: The untrusted path components relative to the
        base directory.
    :return: The joined path; raises ValueError if a component escapes.

    This function is copied from:
    https://github.com/pallets/werkzeug/blob/fb7ddd89ae3072e4f4002701a643eb247a402b64/src/werkzeug/security.py#L222
    """
    parts = [directory]

    for filename in pathnames:
        if filename != "":
            filename = posixpath.normpath(filename)

        if (
            any(sep in filename for sep in _os_alt_seps)
            or os.path.isabs(filename)
            or filename == ".."
            or filename.startswith("../")
        ):
            raise ValueError(
                f"Illegal file path: `{filename}`, "
                "you can only operate within the vault directory."
            )

        parts.append(filename)

    return posixpath.join(*parts)
