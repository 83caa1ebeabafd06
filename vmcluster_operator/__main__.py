"""
Operator entrypoint: ``vmcluster-operator`` or ``python -m vmcluster_operator``.
"""

import logging

import kopf

from vmcluster_operator.config import settings


def main():
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # registers the kopf handlers
    from vmcluster_operator import operator  # noqa: F401

    kopf.run(clusterwide=True)


if __name__ == "__main__":
    main()
