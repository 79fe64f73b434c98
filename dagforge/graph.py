import logging
import warnings

from collections import deque

from . import objects

logger = logging.getLogger (__name__)

OURS, THEIRS = 1, 2
BOTH = OURS | THEIRS


class AmbiguousMergeBase (UserWarning):
    """Criss-cross history: more than one lowest common ancestor exists."""
    def __init__ (self, a, b, bases, chosen):
        super ().__init__ (
            f'{len (bases)} merge bases for {a[:10]} and {b[:10]}, using {chosen[:10]}')
        self.bases = bases
        self.chosen = chosen


def get_commit (oid):
    return objects.read_object (oid, expected=objects.COMMIT)

def parents (oid):
    return list (get_commit (oid).parents)

def iter_commits_and_parents (oids):
    oids = deque (oids)
    visited = set ()

    while oids:
        oid = oids.popleft ()
        if not oid or oid in visited:
            continue
        visited.add (oid)
        yield oid

        commit = get_commit (oid)
        # Return first parent next
        oids.extendleft (commit.parents[:1])
        # Return other parents later
        oids.extend (commit.parents[1:])

def ancestors (oid):
    """All commits reachable from oid, oid included."""
    return set (iter_commits_and_parents ([oid]))

def is_ancestor (a, b):
    """True if `a` is reachable from `b` by parent edges (a commit is its own ancestor)."""
    if a == b:
        return True
    return a in iter_commits_and_parents ([b])

def _mark_sides (a, b):
    # Reverse BFS from both tips, recording which side(s) reached each commit.
    flags = {a: OURS}
    flags[b] = flags.get (b, 0) | THEIRS
    queue = deque ([a, b] if a != b else [a])
    while queue:
        oid = queue.popleft ()
        side = flags[oid]
        for parent in get_commit (oid).parents:
            old = flags.get (parent, 0)
            if old | side != old:
                flags[parent] = old | side
                queue.append (parent)
    return flags

def merge_bases (a, b):
    """
    All lowest common ancestors of a and b.

    A common ancestor is not lowest when it is a parent of another common
    ancestor; every common ancestor's ancestry is itself common, so this is
    the only check needed.
    """
    if a == b:
        return [a]
    flags = _mark_sides (a, b)
    common = {oid for oid, side in flags.items () if side == BOTH}
    dominated = set ()
    for oid in common:
        dominated.update (get_commit (oid).parents)
    return sorted (common - dominated)

def _base_sort_key (oid):
    commit = get_commit (oid)
    return (-commit.committer.timestamp, oid)

def merge_base (a, b):
    """
    The lowest common ancestor of a and b, or None for unrelated histories.

    With criss-cross history several LCAs exist; the one with the newest
    committer timestamp is returned (smallest hash on ties) and an
    AmbiguousMergeBase warning is issued. No virtual merge base is built.
    """
    bases = merge_bases (a, b)
    if not bases:
        return None
    if len (bases) == 1:
        return bases[0]

    chosen = min (bases, key=_base_sort_key)
    logger.warning ('ambiguous merge base for %s and %s: %s, using %s',
                    a, b, ', '.join (bases), chosen)
    warnings.warn (AmbiguousMergeBase (a, b, bases, chosen), stacklevel=2)
    return chosen

def topo_order (commits):
    """
    Order `commits` so each one comes after all of its parents that are also
    in the set. Independent commits keep their input order.
    """
    commits = list (dict.fromkeys (commits))
    members = set (commits)
    position = {oid: i for i, oid in enumerate (commits)}

    pending = {}
    children = {oid: [] for oid in commits}
    for oid in commits:
        in_set = [p for p in get_commit (oid).parents if p in members]
        pending[oid] = len (set (in_set))
        for parent in set (in_set):
            children[parent].append (oid)

    ready = sorted ((oid for oid in commits if pending[oid] == 0), key=position.get)
    ready = deque (ready)
    result = []
    while ready:
        oid = ready.popleft ()
        result.append (oid)
        released = []
        for child in children[oid]:
            pending[child] -= 1
            if pending[child] == 0:
                released.append (child)
        for child in sorted (released, key=position.get):
            ready.append (child)

    assert len (result) == len (commits), 'commit graph has a cycle'
    return result

def commits_between (include, exclude=()):
    """
    Commits reachable from `include` but not from any of `exclude`, parents
    first. This is the `exclude..include` range.
    """
    hidden = set ()
    for oid in exclude:
        hidden.update (iter_commits_and_parents ([oid]))

    reachable = []
    for oid in iter_commits_and_parents ([include]):
        if oid not in hidden:
            reachable.append (oid)

    # Oldest first so unrelated branches replay in history order
    reachable.reverse ()
    return topo_order (reachable)
