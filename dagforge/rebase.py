import logging

from collections import namedtuple

from . import graph
from . import merge
from . import objects
from . import refs
from . import trees

logger = logging.getLogger(__name__)

IDLE = 'idle'
RUNNING = 'running'
PAUSED = 'paused'
ABORTED = 'aborted'
COMPLETED = 'completed'

RebaseStatus = namedtuple('RebaseStatus', ['state', 'head', 'current', 'conflicts',
                                           'done', 'remaining'])


def _status(state, name):
    commits = state['commits']
    idx = state['current_index']
    conflict = state.get('conflict')
    conflicts = []
    if conflict:
        conflicts = merge.conflict_entries(conflict['tree'], conflict['paths'])
    return RebaseStatus(
        state=name,
        head=state['head'],
        current=commits[idx] if name == PAUSED else None,
        conflicts=conflicts,
        done=[tuple(pair) for pair in state['done']],
        remaining=list(commits[idx:]),
    )

def status():
    """Snapshot of the rebase in progress, or an idle status."""
    state = objects.get_rebase_state()
    if not state:
        return RebaseStatus(IDLE, None, None, [], [], [])
    return _status(state, state['status'])

def _require_state():
    state = objects.get_rebase_state()
    if not state:
        raise objects.RebaseError('No rebase in progress.')
    return state

def _check_topo_order(commits):
    members = set(commits)
    seen = set()
    for oid in commits:
        for parent in graph.parents(oid):
            if parent in members and parent not in seen:
                raise objects.RebaseError(
                    f'{oid[:10]} is listed before its parent {parent[:10]}')
        seen.add(oid)

def start(commits, new_base, branch=None, keep_empty=None):
    """
    Replay `commits` (parents first) onto `new_base`.

    When `branch` is given it is moved (compare-and-swap from its value at
    start) to the last replayed commit once every commit has been applied.
    Stops in the paused state on the first conflict.
    """
    if objects.get_rebase_state():
        raise objects.RebaseError('A rebase is already in progress.')

    commits = list(commits)
    graph.get_commit(new_base)
    if not commits:
        logger.info('nothing to rebase onto %s', new_base)
        return RebaseStatus(COMPLETED, new_base, None, [], [], [])

    _check_topo_order(commits)

    orig_head = None
    if branch is not None:
        branch, orig_head = refs.resolve_ref(branch)
        if orig_head is None:
            raise objects.RebaseError(f'Branch {branch} does not exist.')
        refs.update_ref('ORIG_HEAD', refs.resolve_ref('ORIG_HEAD')[1], orig_head,
                        f'rebase: start {branch}', deref=False)

    if keep_empty is None:
        keep_empty = bool(objects.get_config_value('rebase.keepEmpty', False))

    state = {
        'status': RUNNING,
        'branch': branch,
        'orig_head': orig_head,
        'onto': new_base,
        'head': new_base,
        'commits': commits,
        'current_index': 0,
        'done': [],
        'keep_empty': keep_empty,
        'conflict': None,
    }
    objects.save_rebase_state(state)
    logger.info('rebasing %d commit(s) onto %s', len(commits), new_base)
    return _replay_loop(state)

def _finish_apply(commit_oid, head, flat, keep_empty):
    """
    Write the replayed commit for `commit_oid` on top of `head`.

    Returns the new commit hash, or None if the replay changes nothing and
    empty commits are not kept.
    """
    c = graph.get_commit(commit_oid)
    tree_oid = trees.write_tree(flat)
    if tree_oid == graph.get_commit(head).tree and not keep_empty:
        return None

    new_commit = objects.Commit(
        tree=tree_oid,
        parents=(head,),
        author=c.author,
        committer=objects.current_author(),
        message=c.message,
    )
    return objects.write_object(new_commit)

def _apply_commit(commit_oid, head, keep_empty):
    """
    Apply a commit's change relative to its first parent onto `head`.

    Returns:
        (new_oid: str|None, tree: dict, conflicts: list)
    """
    c = graph.get_commit(commit_oid)
    base = c.parents[0] if c.parents else None
    tree, conflicts = merge.merge_commit_trees(base, head, commit_oid)
    if conflicts:
        return None, tree, conflicts
    return _finish_apply(commit_oid, head, merge.clean_entries(tree), keep_empty), tree, []

def _advance(state, commit_oid, new_oid):
    state['done'].append([commit_oid, new_oid])
    if new_oid:
        state['head'] = new_oid
        logger.info('applied %s -> %s', commit_oid[:10], new_oid[:10])
    else:
        logger.info('dropped %s (empty)', commit_oid[:10])
    state['current_index'] += 1
    state['conflict'] = None
    state['status'] = RUNNING
    objects.save_rebase_state(state)

def _replay_loop(state):
    commits = state['commits']

    while state['current_index'] < len(commits):
        commit_oid = commits[state['current_index']]
        new_oid, tree, conflicts = _apply_commit(commit_oid, state['head'], state['keep_empty'])

        if conflicts:
            state['status'] = PAUSED
            state['conflict'] = {'commit': commit_oid, 'paths': conflicts, 'tree': tree}
            objects.save_rebase_state(state)
            logger.info('conflict applying %s: %s', commit_oid[:10], ', '.join(conflicts))
            return _status(state, PAUSED)

        _advance(state, commit_oid, new_oid)

    return _complete(state)

def _complete(state):
    # ORIG_HEAD is left pointing at the pre-rebase tip for recovery
    branch = state['branch']
    if branch is not None:
        # Raises RefConflict if the branch moved meanwhile; state is kept.
        refs.update_ref(branch, state['orig_head'], state['head'],
                        f"rebase finished: {branch} onto {state['onto']}")

    objects.delete_rebase_state()
    logger.info('rebase complete at %s', state['head'])
    return _status(state, COMPLETED)

def rebase_continue(resolutions=None):
    """
    Resume after a conflict using caller-resolved content (path -> bytes,
    (mode, bytes) or None to delete). Without a pending conflict this just
    carries on replaying.
    """
    state = _require_state()
    conflict = state.get('conflict')
    if conflict:
        flat = merge.apply_resolutions(conflict['tree'], resolutions or {})
        new_oid = _finish_apply(conflict['commit'], state['head'], flat, state['keep_empty'])
        _advance(state, conflict['commit'], new_oid)
    return _replay_loop(state)

def skip():
    """Drop the commit that stopped the rebase and continue with the next one."""
    state = _require_state()
    if state['status'] != PAUSED:
        raise objects.RebaseError('Nothing to skip: the rebase is not paused.')
    _advance(state, state['conflict']['commit'], None)
    return _replay_loop(state)

def abort():
    """
    Discard every synthesized commit and drop the rebase state.

    The branch only moves on completion, so it is never rewound here: if it
    changed during the rebase, another writer moved it and that stays.
    """
    state = _require_state()
    branch, orig_head = state['branch'], state['orig_head']
    head = orig_head or state['onto']
    if branch is not None:
        head = refs.resolve_ref(branch)[1]
        if head != orig_head:
            logger.warning('%s moved to %s during the rebase, leaving it there', branch, head)
        if refs.read_ref('ORIG_HEAD').value == orig_head:
            refs.delete_ref('ORIG_HEAD', orig_head, 'rebase aborted')

    objects.delete_rebase_state()
    logger.info('rebase of %s aborted', branch)
    return RebaseStatus(ABORTED, head, None, [], [], [])
