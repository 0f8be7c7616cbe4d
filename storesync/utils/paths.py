# storesync/utils/paths.py
_MISSING = object()


def _step(node, key: str):
    if isinstance(node, dict):
        return node.get(key, _MISSING)
    if isinstance(node, (list, tuple)) and key.lstrip("-").isdigit():
        idx = int(key)
        if -len(node) <= idx < len(node):
            return node[idx]
    return _MISSING


def lookup(record, path: str):
    """Return (found, value) for a dotted path. ``None`` counts as not found."""
    node = record
    for key in path.split("."):
        node = _step(node, key)
        if node is _MISSING or node is None:
            return False, None
    return True, node


def values_at(record, path: str) -> list:
    """All values reachable by ``path``; a non-numeric segment over a list fans out."""
    nodes = [record]
    for key in path.split("."):
        nxt = []
        for node in nodes:
            if isinstance(node, (list, tuple)) and not key.lstrip("-").isdigit():
                for item in node:
                    v = _step(item, key)
                    if v is not _MISSING and v is not None:
                        nxt.append(v)
            else:
                v = _step(node, key)
                if v is not _MISSING and v is not None:
                    nxt.append(v)
        nodes = nxt
        if not nodes:
            return []
    out = []
    for n in nodes:
        if isinstance(n, (list, tuple)):
            out.extend(x for x in n if x is not None)
        else:
            out.append(n)
    return out
