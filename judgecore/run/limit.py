"""
rlimits of judged runs.

RLIMIT_CPU, RLIMIT_AS and RLIMIT_FSIZE are the kernel-enforced halves of
the time, memory and output limits; the monitor thread in limiter
enforces the wall-clock deadline and the sampled memory limit.  The
limits are set in the forked child just before exec.
"""

import math
import resource

# (resource, name, what a finite hard limit of the judge process means)
_INHERITED = [
    (resource.RLIMIT_CPU, 'CPU',
     'runs with a higher time limit are not stopped by SIGXCPU'),
    (resource.RLIMIT_AS, 'address space',
     'the address space backstop of runs is capped at this value'),
    (resource.RLIMIT_FSIZE, 'file size',
     'output limits above this are not honoured'),
    (resource.RLIMIT_STACK, 'stack',
     'runs keep this stack size instead of an unlimited one, which may cause runtime errors'),
]


def check_limit_capabilities(logger):
    """Warn about hard rlimits of the judge process, which every judged
    run inherits and cannot raise.

    Params:
        logger: object to issue warnings to (by calling 'warning' method)

    Returns:
        the number of warnings issued
    """
    warnings = 0
    for limit, name, consequence in _INHERITED:
        (_, hard) = resource.getrlimit(limit)
        if hard != resource.RLIM_INFINITY:
            logger.warning('Hard %s rlimit of %d: %s.', name, hard, consequence)
            warnings += 1
    return warnings


def rlimits_for(limits):
    """The rlimits a run with the given RunLimits gets.

    Returns:
        list of (resource, soft, hard) triples
    """
    result = []
    if limits.cpu_seconds is not None:
        # whole seconds, at least one; SIGXCPU at soft, SIGKILL at hard
        cpu = max(1, math.ceil(limits.cpu_seconds))
        result.append((resource.RLIMIT_CPU, cpu, cpu + 1))
    if limits.address_space_kb is not None:
        address_space = limits.address_space_kb * 1024
        result.append((resource.RLIMIT_AS, address_space, address_space))
    if limits.output_bytes is not None:
        # one byte of slack so that reaching the limit exactly is not a violation
        result.append((resource.RLIMIT_FSIZE, limits.output_bytes + 1, limits.output_bytes + 1))
    if limits.open_files is not None:
        result.append((resource.RLIMIT_NOFILE, limits.open_files, limits.open_files))
    result.append((resource.RLIMIT_STACK, resource.RLIM_INFINITY, resource.RLIM_INFINITY))
    result.append((resource.RLIMIT_CORE, 0, 0))
    return result


def apply(limits):
    """Set the rlimits of limits on the current process."""
    for (limit, soft, hard) in rlimits_for(limits):
        try_limit(limit, soft, hard)


def try_limit(limit, soft, hard):
    """Attempt to set an rlimit, but caps it at the current hard limit for
    the resource (instead of failing like a call to resource.setrlimit
    would).

    Params:
        limit: resource to limit (e.g. resource.RLIMIT_CPU)
        soft: soft limit
        hard: hard limit
    """
    (_, cur_hard) = resource.getrlimit(limit)
    if not __limit_less(soft, cur_hard):
        soft = cur_hard
    if not __limit_less(hard, cur_hard):
        hard = cur_hard
    resource.setrlimit(limit, (soft, hard))


def __limit_less(lim1, lim2):
    """True if rlimit lim1 <= rlimit lim2, with "unlimited" the largest value."""
    if lim2 == resource.RLIM_INFINITY:
        return True
    if lim1 == resource.RLIM_INFINITY:
        return False
    return lim1 <= lim2
