"""ZeroMQ transport: PUSH/SUB sockets through a :mod:`psquery.broker`."""
