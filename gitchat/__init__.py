"""gitchat: serverless group chat over a shared git repository.

Every participant appends to one text file in a git working copy; a
background loop pulls, diffs and shows new lines, and sends are committed
and pushed with a single pull-and-retry on rejection.
"""

__version__ = "0.1.0"
