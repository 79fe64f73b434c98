import json
import logging
import os
import re
import time

from collections import namedtuple
from contextlib import contextmanager

from . import objects

logger = logging.getLogger (__name__)

RefValue = namedtuple ('RefValue', ['symbolic', 'value'])
ReflogEntry = namedtuple ('ReflogEntry', ['old', 'new', 'actor', 'timestamp', 'timezone', 'reason'])

SYMREF_PREFIX = 'ref:'
MAX_SYMREF_DEPTH = 10
SPECIAL_REFS = ['HEAD', 'ORIG_HEAD', 'MERGE_HEAD']
RESERVED_NAMES = {'REBASE_STATE'}

_BAD_REF_CHARS = set (' ~^:?*[\\\x7f')
_TOP_LEVEL_REF = re.compile (r'^[A-Z][A-Z_]*$')


def check_ref_name (name):
    """
    Ref names are either an all-caps top level name (HEAD, ORIG_HEAD) or a
    hierarchical name under refs/ (refs/heads/main, refs/tags/v1.0).
    """
    if not isinstance (name, str) or not name:
        raise objects.InvalidRefName (f'Invalid ref name {name!r}')
    if '/' not in name:
        if not _TOP_LEVEL_REF.match (name) or name in RESERVED_NAMES:
            raise objects.InvalidRefName (f'Invalid ref name {name!r}')
        return
    if not name.startswith ('refs/'):
        raise objects.InvalidRefName (f'Ref {name!r} must live under refs/')
    if '..' in name or '@{' in name or name.endswith ('.lock'):
        raise objects.InvalidRefName (f'Invalid ref name {name!r}')
    for part in name.split ('/'):
        if not part or part.startswith ('.'):
            raise objects.InvalidRefName (f'Invalid ref name {name!r}')
    if any (c in _BAD_REF_CHARS or ord (c) < 32 for c in name):
        raise objects.InvalidRefName (f'Invalid ref name {name!r}')

def _ref_path (name):
    return f'{objects.GIT_DIR}/{name}'

def read_ref (name):
    """Read one ref without following it. Absent refs have value None."""
    check_ref_name (name)
    ref_path = _ref_path (name)
    value = None
    if os.path.isfile (ref_path):
        with open (ref_path) as f:
            value = f.read ().strip ()
    symbolic = bool (value) and value.startswith (SYMREF_PREFIX)
    if symbolic:
        value = value.split (':', 1)[1].strip ()
    return RefValue (symbolic=symbolic, value=value or None)

def _follow (name):
    """
    Walk a chain of symbolic refs starting at `name`.

    Returns (chain, value) where chain lists every ref visited and value is
    the non-symbolic RefValue at the end of it.
    """
    chain = [name]
    value = read_ref (name)
    while value.symbolic:
        if value.value in chain or len (chain) > MAX_SYMREF_DEPTH:
            raise objects.SymbolicCycle (chain + [value.value])
        chain.append (value.value)
        value = read_ref (value.value)
    return chain, value

def resolve_ref (name):
    """Return (final ref name, oid or None) after following symbolic refs."""
    chain, value = _follow (name)
    return chain[-1], value.value

def get_ref (name, deref=True):
    if not deref:
        return read_ref (name)
    return _follow (name)[1]

class _RefLock:
    """A held `<ref>.lock` file. Committing renames it over the ref and releases it."""

    def __init__ (self, name):
        self.name = name
        self.path = _ref_path (name) + '.lock'
        self.committed = False

    def commit (self, content):
        with open (self.path, 'w') as f:
            f.write (content + '\n')
        os.replace (self.path, _ref_path (self.name))
        # From here on the lock path may belong to the next writer
        self.committed = True

@contextmanager
def _ref_lock (name):
    # Non-blocking: a held lock means another writer is mid-update.
    lock = _RefLock (name)
    os.makedirs (os.path.dirname (lock.path), exist_ok=True)
    try:
        fd = os.open (lock.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        raise objects.RefConflict (name, None, None,
                                   f'ref {name} is locked by another writer') from None
    os.close (fd)
    try:
        yield lock
    finally:
        if not lock.committed:
            os.remove (lock.path)

def _current_oid (name):
    value = read_ref (name)
    if value.symbolic:
        return resolve_ref (name)[1]
    return value.value

def update_ref (name, expected_old, new, reason='', deref=True, actor=None):
    """
    Compare-and-swap `name` from `expected_old` to `new`.

    expected_old=None means the ref must not exist yet. Symbolic refs are
    followed to the ref they point at unless deref is False, in which case
    `name` itself is overwritten with a plain hash. Raises RefConflict when
    the current value differs or another writer holds the ref's lock.
    """
    check_ref_name (name)
    if not objects.object_exists (new):
        raise objects.ObjectNotFound (new)

    chain = [name]
    if deref:
        chain = _follow (name)[0]
    real = chain[-1]

    with _ref_lock (real) as lock:
        # Re-read while holding the lock
        actual = _current_oid (real)
        if actual != expected_old:
            raise objects.RefConflict (real, expected_old, actual)
        # Log first: committing the lock releases it
        for ref in reversed (chain):
            append_reflog (ref, actual, new, reason, actor=actor)
        lock.commit (new)

    logger.info ('%s: %s -> %s (%s)', real, actual, new, reason)
    return new

def update_ref_with_retry (name, compute, reason='', retries=3):
    """
    Update `name` to compute(current_oid), retrying on RefConflict.

    This is the only automatic retry: CAS guarantees a lost race never
    overwrites, so recomputing from a fresh read is always safe.
    """
    for attempt in range (retries + 1):
        current = resolve_ref (name)[1]
        new = compute (current)
        try:
            return update_ref (name, current, new, reason)
        except objects.RefConflict:
            if attempt == retries:
                raise
            logger.info ('%s: lost update race, retrying (%d/%d)', name, attempt + 1, retries)

def set_symbolic_ref (name, target, reason='', actor=None):
    check_ref_name (name)
    check_ref_name (target)

    # Refuse to create a cycle
    probe = target
    seen = [name]
    while probe is not None:
        if probe in seen:
            raise objects.SymbolicCycle (seen + [probe])
        seen.append (probe)
        value = read_ref (probe)
        probe = value.value if value.symbolic else None

    with _ref_lock (name) as lock:
        old = None
        if read_ref (name).value is not None:
            old = _current_oid (name)
        new = resolve_ref (target)[1]
        append_reflog (name, old, new, reason, actor=actor)
        lock.commit (f'{SYMREF_PREFIX} {target}')

    logger.info ('%s -> %s (%s)', name, target, reason)

def delete_ref (name, expected_old, reason='', actor=None):
    """Compare-and-delete. The reflog is kept so the old value can be recovered."""
    check_ref_name (name)
    with _ref_lock (name):
        actual = _current_oid (name)
        if actual != expected_old:
            raise objects.RefConflict (name, expected_old, actual)
        if os.path.isfile (_ref_path (name)):
            os.remove (_ref_path (name))
        append_reflog (name, actual, None, reason or 'delete', actor=actor)

    logger.info ('deleted %s (was %s)', name, expected_old)

def iter_refs (prefix='', deref=True):
    refs = list (SPECIAL_REFS)
    refs_root = f'{objects.GIT_DIR}/refs/'
    for root, _, filenames in os.walk (refs_root):
        root = os.path.relpath (root, objects.GIT_DIR)
        refs.extend (f'{root}/{name}' for name in sorted (filenames)
                     if not name.endswith ('.lock'))

    for refname in refs:
        if not refname.startswith (prefix):
            continue
        ref = get_ref (refname, deref=deref)
        if ref.value:
            yield refname, ref


# ============================================================================
# REFLOG
# ============================================================================

def _reflog_path (name):
    return f'{objects.GIT_DIR}/logs/{name}'

def append_reflog (name, old, new, reason, actor=None, timestamp=None):
    if actor is None:
        user_name, email = objects.get_user_identity ()
        actor = f'{user_name} <{email}>'
    entry = {
        'old': old,
        'new': new,
        'actor': actor,
        'timestamp': int (time.time ()) if timestamp is None else timestamp,
        'timezone': objects.local_timezone (),
        'reason': reason,
    }
    path = _reflog_path (name)
    os.makedirs (os.path.dirname (path), exist_ok=True)
    with open (path, 'a') as f:
        f.write (json.dumps (entry) + '\n')

def read_reflog (name):
    """Reflog entries for `name`, oldest first. A missing log is empty."""
    path = _reflog_path (name)
    if not os.path.isfile (path):
        return []
    entries = []
    with open (path) as f:
        for line in f:
            line = line.strip ()
            if line:
                entries.append (ReflogEntry (**json.loads (line)))
    return entries

def expire_reflog (name, max_age=None, max_count=None, now=None):
    """
    Drop reflog entries older than max_age seconds and keep at most
    max_count of the newest. Defaults come from reflog.expireDays and
    reflog.maxEntries. Returns how many entries were removed.
    """
    if max_age is None:
        days = objects.get_config_value ('reflog.expireDays')
        max_age = days * 86400 if days is not None else None
    if max_count is None:
        max_count = objects.get_config_value ('reflog.maxEntries')

    entries = read_reflog (name)
    kept = entries
    if max_age is not None:
        cutoff = (time.time () if now is None else now) - max_age
        kept = [e for e in kept if e.timestamp >= cutoff]
    if max_count is not None:
        kept = kept[-max_count:] if max_count > 0 else []

    removed = len (entries) - len (kept)
    if removed:
        path = _reflog_path (name)
        with open (f'{path}.tmp', 'w') as f:
            for e in kept:
                f.write (json.dumps (e._asdict ()) + '\n')
        os.replace (f'{path}.tmp', path)
        logger.info ('expired %d reflog entries of %s', removed, name)
    return removed
