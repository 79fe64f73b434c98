"""
Binary search for the first bad commit.

A session holds nothing but its search window: the commits reachable from
the current bad commit and from none of the good ones, parents first. The
bad commit is in the window; the good boundaries are not.
"""

import logging

from collections import namedtuple

from . import graph
from . import objects

logger = logging.getLogger(__name__)

GOOD = 'good'
BAD = 'bad'
SKIP = 'skip'
VERDICTS = (GOOD, BAD, SKIP)

Candidate = namedtuple('Candidate', ['commit', 'remaining', 'steps'])
Done = namedtuple('Done', ['first_bad', 'suspects'])


class BisectError(objects.DagforgeError):
    pass


class BisectSession:

    def __init__(self, good, bad):
        if isinstance(good, str):
            good = [good]
        self.good = list(good)
        self.bad = bad
        self.skipped = set()
        self.log = []
        self.range = graph.commits_between(bad, self.good)
        if not self.range:
            raise BisectError(f'{bad[:10]} is an ancestor of a good commit')
        logger.debug('bisecting %d commit(s) between %s and %s',
                     len(self.range), ', '.join(self.good), bad)

    def _is_linear(self):
        previous = None
        members = set(self.range)
        for oid in self.range:
            in_range = [p for p in graph.parents(oid) if p in members]
            if in_range != ([previous] if previous else []):
                return False
            previous = oid
        return True

    def _reach_counts(self):
        # Range is parents-first, so every parent's set is ready before its children.
        members = set(self.range)
        reach = {}
        for oid in self.range:
            seen = {oid}
            for parent in graph.parents(oid):
                if parent in members:
                    seen |= reach[parent]
            reach[oid] = seen
        return {oid: len(seen) for oid, seen in reach.items()}

    def next_candidate(self):
        """The commit to test next, or Done once the first bad commit is known."""
        n = len(self.range)
        if n == 1:
            return Done(first_bad=self.range[0], suspects=(self.range[0],))

        testable = [i for i, oid in enumerate(self.range)
                    if oid != self.bad and oid not in self.skipped]
        if not testable:
            # Only skipped commits left: any of them could be the culprit
            return Done(first_bad=None, suspects=tuple(self.range))

        if self._is_linear():
            ideal = n // 2 - 1
            best = min(testable, key=lambda i: (abs(i - ideal), i))
        else:
            counts = self._reach_counts()
            best = max(testable, key=lambda i: (min(counts[self.range[i]],
                                                    n - counts[self.range[i]]), -i))
        return Candidate(commit=self.range[best], remaining=n, steps=(n - 1).bit_length())

    def mark(self, commit, verdict):
        """Record a verdict for `commit` and narrow the window accordingly."""
        if verdict not in VERDICTS:
            raise ValueError(f'Unknown verdict {verdict!r}')
        if commit not in self.range:
            raise BisectError(f'{commit[:10]} is not in the remaining range')

        if verdict == BAD:
            reachable = graph.ancestors(commit)
            self.range = [oid for oid in self.range if oid in reachable]
            self.bad = commit
        elif verdict == GOOD:
            if commit == self.bad:
                raise BisectError(f'{commit[:10]} was already marked bad')
            reachable = graph.ancestors(commit)
            self.range = [oid for oid in self.range if oid not in reachable]
            self.good.append(commit)
        else:
            self.skipped.add(commit)

        self.log.append((commit, verdict))
        logger.debug('%s marked %s, %d left', commit, verdict, len(self.range))
        return self.next_candidate()


def run(good, bad, oracle):
    """
    Bisect with `oracle(commit) -> GOOD | BAD | SKIP` deciding each step.

    Returns the final Done.
    """
    session = BisectSession(good, bad)
    result = session.next_candidate()
    while isinstance(result, Candidate):
        result = session.mark(result.commit, oracle(result.commit))
    logger.info('first bad commit: %s', result.first_bad)
    return result
