import logging

from collections import namedtuple

from . import diff_engine
from . import graph
from . import objects
from . import trees
from .diff_engine import STRATEGY_OURS, STRATEGY_RESOLVE, STRATEGY_THEIRS  # noqa: F401

logger = logging.getLogger(__name__)

# Merge outcomes. Conflicts are data, not exceptions.
AlreadyUpToDate = namedtuple('AlreadyUpToDate', ['commit'])
FastForward = namedtuple('FastForward', ['commit'])
Merged = namedtuple('Merged', ['commit', 'tree', 'base'])
ConflictSet = namedtuple('ConflictSet', ['conflicts', 'base', 'ours', 'theirs', 'tree'])

Conflict = namedtuple('Conflict', ['path', 'type', 'base_content', 'ours_content',
                                   'theirs_content', 'merged_content'])


def _content(entry):
    if entry is None:
        return None
    return objects.get_object(entry[1])

def conflict_entries(tree, paths):
    """Structured conflict records for `paths` of a merge_trees() result."""
    result = []
    for path in paths:
        entry = tree[path]
        result.append(Conflict(
            path=path,
            type=entry['type'],
            base_content=_content(entry['base']),
            ours_content=_content(entry['ours']),
            theirs_content=_content(entry['theirs']),
            merged_content=objects.get_object(entry['oid']) if entry['oid'] else None,
        ))
    return result

def clean_entries(tree):
    return {path: (entry['mode'], entry['oid'])
            for path, entry in tree.items() if entry['state'] == 'clear'}

def apply_resolutions(tree, resolutions):
    """
    Turn a merge_trees() result plus caller-supplied content into a flat tree.

    `resolutions` maps path -> bytes, (mode, bytes), or None to delete the
    path. Every conflicted path must be resolved.
    """
    unresolved = sorted(path for path, entry in tree.items()
                        if entry['state'] == 'conflict' and path not in resolutions)
    if unresolved:
        raise objects.ConflictException(
            f"Unresolved conflicts remain in: {', '.join(unresolved)}", unresolved)

    flat = clean_entries(tree)
    for path, value in resolutions.items():
        if value is None:
            flat.pop(path, None)
            continue
        if isinstance(value, (bytes, bytearray)):
            entry = tree.get(path, {})
            mode = entry.get('mode')
            for side in ('ours', 'theirs', 'base'):
                if mode is None and entry.get(side):
                    mode = entry[side][0]
            mode = mode or objects.MODE_FILE
            data = bytes(value)
        else:
            mode, data = value
        flat[path] = (mode, objects.hash_object(data))
    return flat

def merge_commit_trees(base, ours, theirs, strategy=STRATEGY_RESOLVE):
    return diff_engine.merge_trees(
        trees.commit_tree(base),
        trees.commit_tree(ours),
        trees.commit_tree(theirs),
        strategy=strategy,
        labels=(ours[:10], theirs[:10]),
    )

def _write_merge_commit(flat, ours, theirs, message, author):
    committer = objects.current_author()
    commit = objects.Commit(
        tree=trees.write_tree(flat),
        parents=(ours, theirs),
        author=author or committer,
        committer=committer,
        message=message or f'Merge {theirs[:10]} into {ours[:10]}\n',
    )
    return objects.write_object(commit), commit.tree

def merge(ours, theirs, message=None, author=None, strategy=STRATEGY_RESOLVE):
    """
    Three-way merge of commit `theirs` into commit `ours`.

    Returns AlreadyUpToDate, FastForward, Merged (a new two-parent commit was
    written) or ConflictSet (nothing was written; see resolve()). No
    reference is moved.
    """
    if graph.is_ancestor(theirs, ours):
        return AlreadyUpToDate(ours)
    if graph.is_ancestor(ours, theirs):
        return FastForward(theirs)

    base = graph.merge_base(ours, theirs)
    if base is None:
        logger.info('%s and %s share no history, merging against the empty tree', ours, theirs)

    tree, conflicts = merge_commit_trees(base, ours, theirs, strategy)
    if conflicts:
        logger.info('merge of %s into %s stopped on %d conflict(s)', theirs, ours, len(conflicts))
        return ConflictSet(conflicts=conflict_entries(tree, conflicts), base=base,
                           ours=ours, theirs=theirs, tree=tree)

    oid, tree_oid = _write_merge_commit(clean_entries(tree), ours, theirs, message, author)
    logger.info('merged %s into %s as %s', theirs, ours, oid)
    return Merged(commit=oid, tree=tree_oid, base=base)

def resolve(conflict_set, resolutions, message=None, author=None):
    """Finish a conflicted merge with caller-resolved content for every conflicted path."""
    flat = apply_resolutions(conflict_set.tree, resolutions)
    oid, tree_oid = _write_merge_commit(flat, conflict_set.ours, conflict_set.theirs,
                                        message, author)
    logger.info('resolved merge of %s into %s as %s', conflict_set.theirs, conflict_set.ours, oid)
    return Merged(commit=oid, tree=tree_oid, base=conflict_set.base)
