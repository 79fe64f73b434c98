from . import objects


def _iter_tree_entries (oid):
    if not oid:
        return
    tree = objects.read_object (oid, expected=objects.TREE)
    yield from tree.entries

def get_tree (oid, base_path=''):
    """Flatten a tree object into {path: (mode, oid)} for every blob below it."""
    result = {}
    for entry in _iter_tree_entries (oid):
        assert '/' not in entry.name
        assert entry.name not in ('..', '.')
        path = base_path + entry.name
        if entry.kind == objects.BLOB:
            result[path] = (entry.mode, entry.oid)
        elif entry.kind == objects.TREE:
            result.update (get_tree (entry.oid, f'{path}/'))
        else:
            assert False, f'Unknown tree entry {entry.kind}'
    return result

def commit_tree (commit_oid):
    if commit_oid is None:
        return {}
    commit = objects.read_object (commit_oid, expected=objects.COMMIT)
    return get_tree (commit.tree)

def write_tree (flat):
    """Build tree objects for {path: (mode, oid)} and return the root tree hash."""
    # Flat paths, we need them as a tree of dicts
    as_tree = {}
    for path, (mode, oid) in flat.items ():
        path_parts = path.split ('/')
        dirpath, filename = path_parts[:-1], path_parts[-1]

        current = as_tree
        # Find the dict for the directory of this file
        for dirname in dirpath:
            current = current.setdefault (dirname, {})
            if not isinstance (current, dict):
                raise ValueError (f'{path}: parent directory is also a file')
        if filename in current:
            raise ValueError (f'{path}: file is also a directory')
        current[filename] = (mode, oid)

    def write_tree_recursive (tree_dict):
        entries = []
        for name, value in tree_dict.items ():
            if isinstance (value, dict):
                entries.append (objects.TreeEntry (name=name, mode=objects.MODE_TREE,
                                                   kind=objects.TREE,
                                                   oid=write_tree_recursive (value)))
            else:
                mode, oid = value
                entries.append (objects.TreeEntry (name=name, mode=mode,
                                                   kind=objects.BLOB, oid=oid))
        return objects.write_object (objects.Tree (tuple (entries)))

    return write_tree_recursive (as_tree)

def snapshot_to_flat (snapshot):
    """
    Store the content of a working-tree snapshot and return its flat tree.

    Snapshot values are bytes (a regular file) or (mode, bytes).
    """
    flat = {}
    for path, value in snapshot.items ():
        if isinstance (value, (bytes, bytearray)):
            mode, data = objects.MODE_FILE, bytes (value)
        else:
            mode, data = value
        if mode not in objects.BLOB_MODES:
            raise ValueError (f'{path}: unsupported mode {mode}')
        flat[path] = (mode, objects.hash_object (data))
    return flat

def flat_to_snapshot (flat):
    snapshot = {}
    for path, (mode, oid) in flat.items ():
        data = objects.get_object (oid)
        snapshot[path] = data if mode == objects.MODE_FILE else (mode, data)
    return snapshot
