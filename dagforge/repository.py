import logging
import string

from . import graph
from . import merge as merge_engine
from . import objects
from . import rebase as sequencer
from . import refs
from . import trees

logger = logging.getLogger (__name__)

DEFAULT_BRANCH = 'main'


def init (default_branch=None):
    objects.init ()
    if default_branch:
        objects.set_config ('init.defaultBranch', default_branch)
    branch = default_branch or objects.get_config_value ('init.defaultBranch', DEFAULT_BRANCH)
    refs.set_symbolic_ref ('HEAD', f'refs/heads/{branch}', 'init')

def write_tree (snapshot):
    """Store a working-tree snapshot {path: bytes | (mode, bytes)} and return its tree hash."""
    return trees.write_tree (trees.snapshot_to_flat (snapshot))

def read_snapshot (tree_oid):
    return trees.flat_to_snapshot (trees.get_tree (tree_oid))

def commit_snapshot (oid):
    return read_snapshot (graph.get_commit (oid).tree)

def _check_no_merge_in_progress (action):
    merge_head = refs.get_ref ('MERGE_HEAD').value
    if merge_head:
        raise objects.ConflictException (
            f'Cannot {action}: a merge of {merge_head[:10]} is in progress. '
            'Resolve it with merge_continue () or abort it with merge_abort ().')

def commit (snapshot, message, author=None, parents=None, ref='HEAD'):
    """
    Record `snapshot` as a new commit on top of `ref` and advance it.

    parents defaults to the current value of ref (none for the first commit).
    """
    _check_no_merge_in_progress ('commit')

    HEAD = refs.resolve_ref (ref)[1]
    if parents is None:
        parents = [HEAD] if HEAD else []

    committer = objects.current_author ()
    oid = objects.write_object (objects.Commit (
        tree=write_tree (snapshot),
        parents=tuple (parents),
        author=author or committer,
        committer=committer,
        message=message,
    ))

    summary = message.split ('\n', 1)[0]
    reason = f'commit{" (initial)" if not HEAD else ""}: {summary}'
    refs.update_ref (ref, HEAD, oid, reason)
    return oid

def checkout (name):
    """
    Point HEAD at a branch (symbolic) or detach it at a commit, and return
    the snapshot the working-tree adapter should materialize.
    """
    _check_no_merge_in_progress ('checkout')

    oid = get_commit_oid (name)
    old = refs.resolve_ref ('HEAD')[1]
    if is_branch (name):    # making HEAD symbolic
        refs.set_symbolic_ref ('HEAD', f'refs/heads/{name}', f'checkout: moving to {name}')
    else:                   # making HEAD non-symbolic
        refs.update_ref ('HEAD', old, oid, f'checkout: moving to {oid}', deref=False)

    return commit_snapshot (oid)

def reset (oid, ref='HEAD'):
    """Move ref (through HEAD to the current branch) to oid and return its snapshot."""
    old = refs.resolve_ref (ref)[1]
    refs.update_ref (ref, old, oid, f'reset: moving to {oid}')
    return commit_snapshot (oid)


# ============================================================================
# BRANCHES AND TAGS
# ============================================================================

def create_branch (name, oid):
    refs.update_ref (f'refs/heads/{name}', None, get_commit_oid (oid),
                     f'branch: Created from {oid}')

def delete_branch (name):
    if get_branch_name () == name:
        raise ValueError (f'Cannot delete the checked out branch {name}')
    refname = f'refs/heads/{name}'
    refs.delete_ref (refname, refs.get_ref (refname, deref=False).value, 'branch: deleted')

def iter_branch_names ():
    for refname, _ in refs.iter_refs ('refs/heads/'):
        yield refname[len ('refs/heads/'):]

def is_branch (branch):
    try:
        return refs.get_ref (f'refs/heads/{branch}').value is not None
    except objects.InvalidRefName:
        return False

def get_branch_name ():
    HEAD = refs.get_ref ('HEAD', deref=False)
    if not HEAD.symbolic:
        return None
    HEAD = HEAD.value
    assert HEAD.startswith ('refs/heads/')
    return HEAD[len ('refs/heads/'):]

def create_tag (name, oid, message=None, tagger=None):
    """
    Lightweight tag (a plain ref) when message is None, otherwise an
    annotated tag object that the ref points at.
    """
    target = get_oid (oid)
    if message is not None:
        target = objects.write_object (objects.Tag (
            object=target,
            kind=objects.get_object_kind (target),
            name=name,
            tagger=tagger or objects.current_author (),
            message=message,
        ))
    refs.update_ref (f'refs/tags/{name}', None, target, f'tag: {name}')
    return target

def delete_tag (name):
    refname = f'refs/tags/{name}'
    refs.delete_ref (refname, refs.get_ref (refname).value, 'tag: deleted')

def peel (oid):
    """Follow annotated tags down to the object they ultimately name."""
    while objects.get_object_kind (oid) == objects.TAG:
        oid = objects.read_object (oid, expected=objects.TAG).object
    return oid


"""
    1. f'{name}' -> Root (.dagforge): This way we can specify refs/tags/mytag
    2. f'refs/{name}' -> .dagforge/refs: This way we can specify tags/mytag
    3. f'refs/tags/{name}' -> .dagforge/refs/tags: This way we can specify mytag
    4. f'refs/heads/{name}' -> .dagforge/refs/heads: ref under refs/heads is a branch
    5. A full or unambiguous abbreviated (4+ characters) object hash
"""
def get_oid (name):
    if name == '@': name = 'HEAD'

    # Name is ref
    refs_to_try = [
        f'{name}',
        f'refs/{name}',
        f'refs/tags/{name}',
        f'refs/heads/{name}',
    ]
    for ref in refs_to_try:
        try:
            if refs.get_ref (ref, deref=False).value:
                value = refs.get_ref (ref).value
                if value:
                    return value
        except objects.InvalidRefName:
            continue

    # Name is a hash
    is_hex = all (c in string.hexdigits for c in name)
    if is_hex and len (name) == objects.HASH_LENGTH:
        return name.lower ()
    if is_hex and len (name) >= 4:
        matches = [oid for oid in objects.iter_objects () if oid.startswith (name.lower ())]
        if len (matches) == 1:
            return matches[0]
        if matches:
            raise ValueError (f'Ambiguous object name {name}')

    raise objects.ObjectNotFound (name)

def get_commit_oid (name):
    oid = peel (get_oid (name))
    graph.get_commit (oid)
    return oid


# ============================================================================
# MERGE AND REBASE INTO BRANCHES
# ============================================================================

def merge (other, message=None, strategy=merge_engine.STRATEGY_RESOLVE):
    """
    Merge `other` into HEAD and advance HEAD's branch.

    On conflicts MERGE_HEAD and ORIG_HEAD are recorded and the ConflictSet is
    returned; finish with merge_continue () or merge_abort ().
    """
    _check_no_merge_in_progress ('merge')

    HEAD = refs.resolve_ref ('HEAD')[1]
    assert HEAD
    other = get_commit_oid (other)
    result = merge_engine.merge (HEAD, other, message=message, strategy=strategy)

    if isinstance (result, merge_engine.AlreadyUpToDate):
        logger.info ('already up to date with %s', other)
    elif isinstance (result, merge_engine.FastForward):
        refs.update_ref ('HEAD', HEAD, result.commit, f'merge {other}: Fast-forward')
    elif isinstance (result, merge_engine.Merged):
        refs.update_ref ('HEAD', HEAD, result.commit, f'merge {other}: Merge made by three-way merge')
    elif isinstance (result, merge_engine.ConflictSet):
        # MERGE_HEAD is a intermediate ref created while merging and deleted post merge commit / abort
        refs.update_ref ('MERGE_HEAD', refs.get_ref ('MERGE_HEAD').value, other,
                         f'merge {other}: conflicts', deref=False)
        # ORIG_HEAD is a ref to HEAD before merge, to be used during abort
        refs.update_ref ('ORIG_HEAD', refs.get_ref ('ORIG_HEAD').value, HEAD,
                         f'merge {other}: saving HEAD', deref=False)
    else:
        raise TypeError (f'Unexpected merge result {result!r}')
    return result

def merge_continue (resolutions, message=None, strategy=merge_engine.STRATEGY_RESOLVE):
    """Commit the in-progress merge with resolved content for each conflicted path."""
    MERGE_HEAD = refs.get_ref ('MERGE_HEAD').value
    if not MERGE_HEAD:
        raise objects.ConflictException ('There is no merge in progress (MERGE_HEAD missing).')

    HEAD = refs.resolve_ref ('HEAD')[1]
    result = merge_engine.merge (HEAD, MERGE_HEAD, message=message, strategy=strategy)
    if isinstance (result, merge_engine.ConflictSet):
        result = merge_engine.resolve (result, resolutions, message=message)

    refs.update_ref ('HEAD', HEAD, result.commit, f'merge {MERGE_HEAD}: conflicts resolved')
    _merge_cleanup ()
    return result

def merge_abort ():
    MERGE_HEAD = refs.get_ref ('MERGE_HEAD').value
    if not MERGE_HEAD:
        raise objects.ConflictException ('There is no merge in progress (MERGE_HEAD missing).')
    ORIG_HEAD = refs.get_ref ('ORIG_HEAD').value
    _merge_cleanup ()
    logger.info ('merge of %s aborted', MERGE_HEAD)
    return commit_snapshot (ORIG_HEAD)

def _merge_cleanup ():
    for name in ('MERGE_HEAD', 'ORIG_HEAD'):
        value = refs.get_ref (name, deref=False).value
        if value:
            refs.delete_ref (name, value, 'merge: cleanup')

def commits_to_replay (upstream_oid, head_oid):
    """Commits on head that upstream lacks, parents first. Merge commits are rejected."""
    commits = graph.commits_between (head_oid, [upstream_oid])
    for commit_oid in commits:
        if len (graph.parents (commit_oid)) > 1:
            raise objects.RebaseError (
                f'Cannot rebase: commit {commit_oid[:10]} is a merge commit.')
    return commits

def rebase (upstream, branch=None):
    """
    Rebase `branch` (default: the checked out branch) onto `upstream`.

    Returns the sequencer status; a paused rebase is continued with
    rebase.rebase_continue (), rebase.skip () or rebase.abort ().
    """
    _check_no_merge_in_progress ('rebase')

    branch = branch or get_branch_name ()
    if branch is None:
        raise objects.RebaseError ('Cannot rebase a detached HEAD without a branch.')
    refname = f'refs/heads/{branch}'
    head_oid = refs.get_ref (refname).value
    if not head_oid:
        raise objects.RebaseError (f'Branch {branch} has no commits.')
    upstream_oid = get_commit_oid (upstream)

    if graph.is_ancestor (upstream_oid, head_oid):
        logger.info ('%s is already based on %s', branch, upstream_oid)
        return sequencer.RebaseStatus (sequencer.COMPLETED, head_oid, None, [], [], [])

    commits = commits_to_replay (upstream_oid, head_oid)
    return sequencer.start (commits, upstream_oid, branch=refname)
