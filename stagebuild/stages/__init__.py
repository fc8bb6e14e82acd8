"""Stage graph resolution and stage execution.

This module handles:
- Resolving stage declarations into a batched build plan
- Running a stage's steps with cache mounts
- Importing artifacts between stage filesystems
- Freezing finished stages into immutable snapshots
"""

# Access submodules directly: stagebuild.stages.resolver, .executor, etc.
