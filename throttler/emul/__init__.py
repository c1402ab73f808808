"""
Network emulation with ``tc`` [#e1]_, using ``htb`` [#e2]_ to split the
traffic in classes and ``netem`` [#e3]_ to impair each of them.

- :py:mod:`~throttler.emul.htb` builds the hierarchy: the root qdiscs of the
  shaped device and of the ifb (for inbound traffic), then one class per
  traffic class, selected by the netfilter mark of the packets.

- :py:mod:`~throttler.emul.netem` schedules the netem parameters of every
  class over time.

- :py:mod:`~throttler.emul.commands` holds the typed builders of every
  ``tc`` and ``ip`` command.

.. note::

  Requirements:

    - ``ifb`` module available on the host
    - ``tc`` tool available (install ``iproute2`` package on debian based
      distribution)

.. topic:: Links:

    .. [#e1] https://www.lartc.org/lartc.html
    .. [#e2] https://tldp.org/HOWTO/Traffic-Control-HOWTO/classful-qdiscs.html
    .. [#e3] https://wiki.linuxfoundation.org/networking/netem
"""
