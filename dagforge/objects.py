import hashlib
import json
import logging
import os
import tempfile
import time
import zlib

from collections import namedtuple
from contextlib import contextmanager

logger = logging.getLogger (__name__)

# Will be initialized by change_git_dir ()
GIT_DIR = None

HASH_LENGTH = 64

BLOB, TREE, COMMIT, TAG = 'blob', 'tree', 'commit', 'tag'
KINDS = (BLOB, TREE, COMMIT, TAG)

MODE_FILE = '100644'
MODE_EXEC = '100755'
MODE_LINK = '120000'
MODE_TREE = '040000'
BLOB_MODES = (MODE_FILE, MODE_EXEC, MODE_LINK)


class DagforgeError (Exception):
    pass


class ObjectNotFound (DagforgeError, KeyError):
    """Dereferencing a hash that is not in the store."""
    def __init__ (self, oid):
        super ().__init__ (f'object {oid} not found')
        self.oid = oid

    def __str__ (self):
        return self.args[0]


class CorruptObject (DagforgeError):
    """Stored bytes do not hash to their key. Never recoverable."""
    def __init__ (self, oid, reason):
        super ().__init__ (f'object {oid} is corrupt: {reason}')
        self.oid = oid


class WrongObjectKind (DagforgeError):
    def __init__ (self, oid, expected, actual):
        super ().__init__ (f'Expected {expected}, got {actual} for {oid}')
        self.oid = oid
        self.expected = expected
        self.actual = actual


class RefConflict (DagforgeError):
    """Compare-and-swap on a reference lost a race. Safe to retry."""
    def __init__ (self, name, expected, actual, message=None):
        super ().__init__ (message or f'ref {name}: expected {expected}, found {actual}')
        self.name = name
        self.expected = expected
        self.actual = actual


class SymbolicCycle (DagforgeError):
    def __init__ (self, chain):
        super ().__init__ ('symbolic ref cycle: ' + ' -> '.join (chain))
        self.chain = chain


class InvalidRefName (DagforgeError, ValueError):
    pass


class ConflictException (DagforgeError):
    """Raised when an operation cannot proceed because conflicts are unresolved."""
    def __init__ (self, message, conflicted_files=None):
        super ().__init__ (message)
        self.conflicted_files = conflicted_files or []


class RebaseError (DagforgeError):
    pass


@contextmanager
def change_git_dir (new_dir):
    global GIT_DIR
    old_dir = GIT_DIR
    GIT_DIR = f'{new_dir}/.dagforge'
    try:
        yield
    finally:
        GIT_DIR = old_dir

def init ():
    os.makedirs (GIT_DIR)
    os.makedirs (f'{GIT_DIR}/objects')
    os.makedirs (f'{GIT_DIR}/refs/heads')
    os.makedirs (f'{GIT_DIR}/refs/tags')


# ============================================================================
# OBJECT VARIANTS AND CANONICAL ENCODING
# ============================================================================

Author = namedtuple ('Author', ['name', 'email', 'timestamp', 'timezone'])

Blob = namedtuple ('Blob', ['data'])
TreeEntry = namedtuple ('TreeEntry', ['name', 'mode', 'kind', 'oid'])
Tree = namedtuple ('Tree', ['entries'])
Commit = namedtuple ('Commit', ['tree', 'parents', 'author', 'committer', 'message'])
Tag = namedtuple ('Tag', ['object', 'kind', 'name', 'tagger', 'message'])


def is_valid_oid (oid):
    return (isinstance (oid, str) and len (oid) == HASH_LENGTH
            and all (c in '0123456789abcdef' for c in oid))

def _check_oid (oid):
    if not is_valid_oid (oid):
        raise ValueError (f'Invalid object id {oid!r}')

def _check_entry_name (name):
    if not name or name in ('.', '..'):
        raise ValueError (f'Invalid tree entry name {name!r}')
    if any (c in name for c in '/\n\x00'):
        raise ValueError (f'Invalid tree entry name {name!r}')

def format_author (author):
    for field in (author.name, author.email):
        if any (c in field for c in '<>\n'):
            raise ValueError (f'Invalid identity field {field!r}')
    return f'{author.name} <{author.email}> {author.timestamp} {author.timezone}'

def parse_author (value):
    name, sep, rest = value.partition (' <')
    email, sep2, stamp = rest.partition ('> ')
    if not sep or not sep2:
        raise ValueError (f'Malformed identity line {value!r}')
    timestamp, _, tz = stamp.partition (' ')
    return Author (name=name, email=email, timestamp=int (timestamp), timezone=tz)

def encode_object (obj):
    """Return (kind, payload) for an object variant."""
    if isinstance (obj, Blob):
        return BLOB, bytes (obj.data)

    if isinstance (obj, Tree):
        lines = []
        names = [entry.name for entry in obj.entries]
        if len (set (names)) != len (names):
            raise ValueError ('Duplicate tree entry names')
        for entry in sorted (obj.entries, key=lambda e: e.name):
            _check_entry_name (entry.name)
            _check_oid (entry.oid)
            if entry.kind not in (BLOB, TREE):
                raise ValueError (f'Tree entries must be blobs or trees, got {entry.kind}')
            if (entry.mode == MODE_TREE) != (entry.kind == TREE) or \
                    (entry.kind == BLOB and entry.mode not in BLOB_MODES):
                raise ValueError (f'Bad mode {entry.mode} for {entry.kind} {entry.name}')
            lines.append (f'{entry.mode} {entry.kind} {entry.oid} {entry.name}\n')
        return TREE, ''.join (lines).encode ()

    if isinstance (obj, Commit):
        _check_oid (obj.tree)
        data = f'tree {obj.tree}\n'
        for parent in obj.parents:
            _check_oid (parent)
            data += f'parent {parent}\n'
        data += f'author {format_author (obj.author)}\n'
        data += f'committer {format_author (obj.committer)}\n'
        data += '\n'
        data += obj.message
        return COMMIT, data.encode ()

    if isinstance (obj, Tag):
        _check_oid (obj.object)
        if obj.kind not in KINDS:
            raise ValueError (f'Unknown tag target kind {obj.kind}')
        if not obj.name or '\n' in obj.name:
            raise ValueError (f'Invalid tag name {obj.name!r}')
        data = f'object {obj.object}\n'
        data += f'type {obj.kind}\n'
        data += f'tag {obj.name}\n'
        data += f'tagger {format_author (obj.tagger)}\n'
        data += '\n'
        data += obj.message
        return TAG, data.encode ()

    raise TypeError (f'Not an object variant: {obj!r}')

def _split_headers (payload):
    text = payload.decode ()
    header, _, message = text.partition ('\n\n')
    headers = []
    for line in header.split ('\n'):
        key, _, value = line.partition (' ')
        headers.append ((key, value))
    return headers, message

def decode_object (kind, payload):
    if kind == BLOB:
        return Blob (payload)

    if kind == TREE:
        entries = []
        for line in payload.decode ().split ('\n')[:-1]:
            mode, kind_, oid, name = line.split (' ', 3)
            entries.append (TreeEntry (name=name, mode=mode, kind=kind_, oid=oid))
        return Tree (tuple (entries))

    if kind == COMMIT:
        headers, message = _split_headers (payload)
        tree, parents, author, committer = None, [], None, None
        for key, value in headers:
            if key == 'tree':
                tree = value
            elif key == 'parent':
                parents.append (value)
            elif key == 'author':
                author = parse_author (value)
            elif key == 'committer':
                committer = parse_author (value)
            else:
                raise ValueError (f'Unknown commit field {key}')
        return Commit (tree=tree, parents=tuple (parents), author=author,
                       committer=committer, message=message)

    if kind == TAG:
        headers, message = _split_headers (payload)
        headers = dict (headers)
        return Tag (object=headers['object'], kind=headers['type'], name=headers['tag'],
                    tagger=parse_author (headers['tagger']), message=message)

    raise ValueError (f'Unknown object kind {kind}')


# ============================================================================
# OBJECT STORE
# ============================================================================

def _envelope (data, type_):
    return f'{type_} {len (data)}'.encode () + b'\x00' + data

def _object_path (oid):
    return f'{GIT_DIR}/objects/{oid[:2]}/{oid[2:]}'

def hash_object (data, type_=BLOB):
    """
    Store `data` as an object of kind `type_` and return its hash.

    Identical content always yields the same hash and is written once. New
    objects go to a temporary file that is renamed into place, so concurrent
    writers and readers never observe a partial object.
    """
    if type_ not in KINDS:
        raise ValueError (f'Unknown object kind {type_}')
    obj = _envelope (data, type_)
    oid = hashlib.sha256 (obj).hexdigest ()
    path = _object_path (oid)
    if os.path.isfile (path):
        return oid

    os.makedirs (os.path.dirname (path), exist_ok=True)
    level = get_config ().get ('core', {}).get ('compression', -1)
    fd, tmp_path = tempfile.mkstemp (dir=os.path.dirname (path), prefix='tmp_obj_')
    try:
        with os.fdopen (fd, 'wb') as out:
            out.write (zlib.compress (obj, level))
        os.replace (tmp_path, path)
    except BaseException:
        if os.path.exists (tmp_path):
            os.remove (tmp_path)
        raise
    logger.debug ('wrote %s %s (%d bytes)', type_, oid, len (data))
    return oid

def _read_envelope (oid):
    _check_oid (oid)
    try:
        with open (_object_path (oid), 'rb') as f:
            raw = f.read ()
    except FileNotFoundError:
        raise ObjectNotFound (oid) from None

    try:
        obj = zlib.decompress (raw)
    except zlib.error as e:
        raise CorruptObject (oid, f'cannot decompress ({e})') from e

    if hashlib.sha256 (obj).hexdigest () != oid:
        raise CorruptObject (oid, 'content hash mismatch')

    header, sep, content = obj.partition (b'\x00')
    type_, _, size = header.decode (errors='replace').partition (' ')
    if not sep or type_ not in KINDS or not size.isdigit () or int (size) != len (content):
        raise CorruptObject (oid, 'malformed header')
    return type_, content

def get_object (oid, expected=BLOB):
    type_, content = _read_envelope (oid)
    if expected is not None and type_ != expected:
        raise WrongObjectKind (oid, expected, type_)
    return content

def get_object_kind (oid):
    return _read_envelope (oid)[0]

def object_exists (oid):
    return is_valid_oid (oid) and os.path.isfile (_object_path (oid))

def verify_object (oid):
    """Re-hash a stored object; raises CorruptObject on mismatch."""
    _read_envelope (oid)

def iter_objects ():
    root = f'{GIT_DIR}/objects'
    for prefix in sorted (os.listdir (root)):
        if len (prefix) != 2:
            continue
        for rest in sorted (os.listdir (f'{root}/{prefix}')):
            if rest.startswith ('tmp_obj_'):
                continue
            yield prefix + rest

def write_object (obj):
    type_, data = encode_object (obj)
    return hash_object (data, type_)

def read_object (oid, expected=None):
    type_, content = _read_envelope (oid)
    if expected is not None and type_ != expected:
        raise WrongObjectKind (oid, expected, type_)
    return decode_object (type_, content)


# ============================================================================
# CONFIG AND IDENTITY
# ============================================================================

def get_config ():
    config_path = f'{GIT_DIR}/config'
    config = {}
    if os.path.isfile (config_path):
        with open (config_path) as f:
            config = json.load (f)
    return config

def get_config_value (key, default=None):
    current = get_config ()
    for k in key.split ('.'):
        if not isinstance (current, dict) or k not in current:
            return default
        current = current[k]
    return current

def set_config (key, value):
    config = get_config ()
    keys = key.split ('.')
    current = config
    for k in keys[:-1]:
        current = current.setdefault (k, {})
    current[keys[-1]] = value

    with open (f'{GIT_DIR}/config', 'w') as f:
        json.dump (config, f, indent=2)

def get_user_identity ():
    config = get_config ()
    user = config.get ('user', {})

    name = user.get ('name') or os.environ.get ('DAGFORGE_AUTHOR_NAME', 'Unknown')
    email = user.get ('email') or os.environ.get ('DAGFORGE_AUTHOR_EMAIL', 'unknown@example.com')

    return name, email

def local_timezone ():
    local_time = time.localtime ()
    if local_time.tm_isdst and time.daylight:
        offset = -time.altzone
    else:
        offset = -time.timezone
    hours, remainder = divmod (abs (offset), 3600)
    minutes = remainder // 60
    sign = '+' if offset >= 0 else '-'
    return f'{sign}{hours:02d}{minutes:02d}'

def current_author ():
    name, email = get_user_identity ()
    return Author (name=name, email=email, timestamp=int (time.time ()),
                   timezone=local_timezone ())


# ============================================================================
# REBASE STATE MANAGEMENT
# ============================================================================

def get_rebase_state():
    """Get current rebase state from .dagforge/REBASE_STATE"""
    state_path = f'{GIT_DIR}/REBASE_STATE'
    if os.path.isfile(state_path):
        with open(state_path) as f:
            return json.load(f)
    return None

def save_rebase_state(state):
    """Save rebase state to .dagforge/REBASE_STATE"""
    state_path = f'{GIT_DIR}/REBASE_STATE'
    with open(f'{state_path}.tmp', 'w') as f:
        json.dump(state, f)
    os.replace(f'{state_path}.tmp', state_path)

def delete_rebase_state():
    """Delete rebase state file"""
    state_path = f'{GIT_DIR}/REBASE_STATE'
    if os.path.isfile(state_path):
        os.remove(state_path)
