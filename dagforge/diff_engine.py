import logging

from collections import defaultdict
from difflib import SequenceMatcher

from . import objects

logger = logging.getLogger (__name__)

STRATEGY_RESOLVE = 'resolve'
STRATEGY_OURS = 'ours'
STRATEGY_THEIRS = 'theirs'
STRATEGIES = (STRATEGY_RESOLVE, STRATEGY_OURS, STRATEGY_THEIRS)

BINARY_PROBE = 8000

_OURS, _THEIRS = 'ours', 'theirs'


def compare_trees (*trees):
    entries = defaultdict (lambda: [None] * len (trees))
    for i, tree in enumerate (trees):
        for path, entry in tree.items ():
            entries[path][i] = entry

    for path in sorted (entries):
        yield (path, *entries[path])

def iter_changed_files (t_from, t_to):
    for path, o_from, o_to in compare_trees (t_from, t_to):
        if o_from != o_to:
            action = ('new file' if not o_from else
                      'deleted' if not o_to else
                      'modified')
            yield path, action

def is_binary (data):
    return b'\x00' in data[:BINARY_PROBE]

def _clear (mode, oid):
    return {'state': 'clear', 'mode': mode, 'oid': oid}

def _merge_modes (m_base, m_ours, m_theirs):
    """Three-way merge of a file mode; None when both sides changed it differently."""
    if m_ours == m_theirs:
        return m_ours
    if m_ours == m_base:
        return m_theirs
    if m_theirs == m_base:
        return m_ours
    return None

def merge_trees (t_base, t_ours, t_theirs, strategy=STRATEGY_RESOLVE, labels=('ours', 'theirs')):
    """
    Perform a 3-way merge of flat trees mapping path -> (mode, oid).

    Returns:
        (tree, conflicts): merged entries per path and the sorted list of
        conflicted paths. Clean entries are {"state": "clear", "mode", "oid"};
        conflicted entries carry "type", the "base"/"ours"/"theirs" entries
        (or None where absent) and "oid" of marker-annotated text, if any.

    Conflict types:
        - content: both sides changed a text file and the edits overlap
        - binary: both sides changed a binary file or symlink differently
        - mode: both sides changed the file mode differently
        - add_add: both sides added the path with different content
        - delete_modify: ours deleted, theirs modified
        - modify_delete: ours modified, theirs deleted

    With the ours/theirs strategy a conflicted path takes that side's
    version instead of being reported.
    """
    if strategy not in STRATEGIES:
        raise ValueError (f'Unknown merge strategy {strategy}')

    tree = {}
    conflicts = []

    for path, e_base, e_ours, e_theirs in compare_trees (t_base, t_ours, t_theirs):
        e_base = tuple (e_base) if e_base else None
        e_ours = tuple (e_ours) if e_ours else None
        e_theirs = tuple (e_theirs) if e_theirs else None

        # ---------- SAME ON BOTH SIDES (including both deleted) ----------
        if e_ours == e_theirs:
            if e_ours is not None:
                tree[path] = _clear (*e_ours)
            continue

        # ---------- ONLY ONE SIDE CHANGED ----------
        if e_ours == e_base:
            if e_theirs is not None:
                tree[path] = _clear (*e_theirs)
            continue
        if e_theirs == e_base:
            if e_ours is not None:
                tree[path] = _clear (*e_ours)
            continue

        # ---------- BOTH CHANGED DIFFERENTLY ----------
        if e_base is None:
            conflict_type = 'add_add'
        elif e_ours is None:
            conflict_type = 'delete_modify'
        elif e_theirs is None:
            conflict_type = 'modify_delete'
        else:
            conflict_type = 'content'

        merged_oid = None
        if e_ours is not None and e_theirs is not None:
            m_base = e_base[0] if e_base else None
            mode = _merge_modes (m_base, e_ours[0], e_theirs[0])
            if e_ours[1] == e_theirs[1]:
                if mode is not None:
                    tree[path] = _clear (mode, e_ours[1])
                    continue
                conflict_type = 'mode'
            else:
                merged_oid, clean = _merge_contents (e_base, e_ours, e_theirs, labels)
                if clean and mode is not None:
                    tree[path] = _clear (mode, merged_oid)
                    continue
                if merged_oid is None:
                    conflict_type = 'binary'
                elif clean:
                    conflict_type = 'mode'

        if strategy != STRATEGY_RESOLVE:
            chosen = e_ours if strategy == STRATEGY_OURS else e_theirs
            logger.info ('%s: %s conflict resolved by %s strategy', path, conflict_type, strategy)
            if chosen is not None:
                tree[path] = _clear (*chosen)
            continue

        tree[path] = {
            'state': 'conflict',
            'type': conflict_type,
            'oid': merged_oid,
            'base': e_base,
            'ours': e_ours,
            'theirs': e_theirs,
        }
        conflicts.append (path)

    return tree, conflicts

def _merge_contents (e_base, e_ours, e_theirs, labels):
    """
    Line-merge one path whose content changed on both sides.

    Returns (oid, clean). oid is None when the content is opaque (binary data
    or a symlink) and no line merge was attempted.
    """
    modes = {e[0] for e in (e_base, e_ours, e_theirs) if e}
    if objects.MODE_LINK in modes:
        return None, False

    base = objects.get_object (e_base[1]) if e_base else b''
    ours = objects.get_object (e_ours[1])
    theirs = objects.get_object (e_theirs[1])
    if any (is_binary (data) for data in (base, ours, theirs)):
        return None, False

    merged, has_conflict = merge_blobs (base, ours, theirs, labels)
    return objects.hash_object (merged), not has_conflict


def _hunks (base, other, side):
    matcher = SequenceMatcher (None, base, other, autojunk=False)
    return [(i1, i2, other[j1:j2], side)
            for tag, i1, i2, j1, j2 in matcher.get_opcodes ()
            if tag != 'equal']

def _apply_side (base, group, side, start, end):
    out = []
    pos = start
    for i1, i2, lines, hunk_side in group:
        if hunk_side != side:
            continue
        out.extend (base[pos:i1])
        out.extend (lines)
        pos = i2
    out.extend (base[pos:end])
    return out

def _terminated (lines):
    if lines and not lines[-1].endswith (b'\n'):
        return lines[:-1] + [lines[-1] + b'\n']
    return lines

def merge_blobs (base, ours, theirs, labels=('ours', 'theirs')):
    """
    Three-way line merge of text content.

    Edits from each side are located against base; a region changed by only
    one side takes that side's lines, a region both sides touch (overlapping
    or adjacent) merges cleanly only if both made the same edit, otherwise it
    is emitted between conflict markers.

    Returns:
        (merged_content, has_conflict)
    """
    base_lines = base.splitlines (keepends=True)
    ours_lines = ours.splitlines (keepends=True)
    theirs_lines = theirs.splitlines (keepends=True)

    hunks = sorted (_hunks (base_lines, ours_lines, _OURS) +
                    _hunks (base_lines, theirs_lines, _THEIRS),
                    key=lambda h: (h[0], h[1]))

    result = []
    has_conflict = False
    pos = 0
    i = 0
    while i < len (hunks):
        group = [hunks[i]]
        start, end = hunks[i][0], hunks[i][1]
        i += 1
        while i < len (hunks) and hunks[i][0] <= end:
            group.append (hunks[i])
            end = max (end, hunks[i][1])
            i += 1

        result.extend (base_lines[pos:start])
        ours_part = _apply_side (base_lines, group, _OURS, start, end)
        theirs_part = _apply_side (base_lines, group, _THEIRS, start, end)
        sides = {h[3] for h in group}
        if sides == {_OURS}:
            result.extend (ours_part)
        elif sides == {_THEIRS}:
            result.extend (theirs_part)
        elif ours_part == theirs_part:
            result.extend (ours_part)
        else:
            has_conflict = True
            result.append (f'<<<<<<< {labels[0]}\n'.encode ())
            result.extend (_terminated (ours_part))
            result.append (b'=======\n')
            result.extend (_terminated (theirs_part))
            result.append (f'>>>>>>> {labels[1]}\n'.encode ())
        pos = end

    result.extend (base_lines[pos:])
    return b''.join (result), has_conflict
