"""Boundary between dockroll and the outside world.

Modules
-------
channel
    ``RemoteChannel`` / ``Session`` protocols plus the OpenSSH and local
    backends. Everything the orchestrator runs on a target host goes
    through a session opened here.
docker_commands
    Pure argv builders for the Docker CLI steps of a rollout.
registry
    ``RegistryClient`` protocol and the ``docker`` CLI implementation used
    by the publisher, with the publish error taxonomy.
"""
