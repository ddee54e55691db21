""" The ZeroMQ forwarding broker. Publishers connect PUSH sockets to the
    *frontend*, subscribers connect SUB sockets to the *backend*; every
    message pulled from the frontend is re-published on the backend, where
    the XPUB socket applies each subscriber's filters.

    A broker holds no state beyond its sockets. Restarting it loses any
    message in flight, and subscribers re-send their subscriptions when
    ZeroMQ reconnects them.
"""

import logging
import threading

import zmq

from . import config
from .transport.zmq.transport import zmq_context


logger = logging.getLogger(__name__)


class Broker:
    """ Forward messages from the frontend PULL socket to the backend XPUB
        socket on a background thread. Either endpoint may use a wildcard
        port, such as 'tcp://127.0.0.1:*'; after :func:`start` the actual
        endpoints are available as :attr:`frontend` and :attr:`backend`.

        :ivar frontend: Endpoint publishers connect to.
        :ivar backend: Endpoint subscribers connect to.
    """

    def __init__(self, frontend=None, backend=None, context=None):

        settings = config.settings()

        if frontend is None:
            frontend = settings.zmq_frontend
        if backend is None:
            backend = settings.zmq_backend
        if context is None:
            context = zmq_context

        self.frontend = frontend
        self.backend = backend
        self.context = context

        self.pull = None
        self.xpub = None
        self.shutdown = False
        self.thread = None
        self.forwarded = 0


    def start(self):
        """ Bind both sockets and begin forwarding. A
            :class:`zmq.ZMQError` is raised if either endpoint cannot be
            bound.
        """

        if self.thread is not None:
            return

        pull = self.context.socket(zmq.PULL)
        pull.setsockopt(zmq.LINGER, 0)
        xpub = self.context.socket(zmq.XPUB)
        xpub.setsockopt(zmq.LINGER, 0)

        try:
            pull.bind(self.frontend)
            xpub.bind(self.backend)
        except zmq.ZMQError:
            pull.close()
            xpub.close()
            raise

        self.frontend = pull.getsockopt_string(zmq.LAST_ENDPOINT)
        self.backend = xpub.getsockopt_string(zmq.LAST_ENDPOINT)

        self.pull = pull
        self.xpub = xpub
        self.shutdown = False

        self.thread = threading.Thread(target=self.run, name='psquery-broker')
        self.thread.daemon = True
        self.thread.start()

        logger.info('broker forwarding %s -> %s', self.frontend, self.backend)


    def stop(self):
        """ Stop forwarding and close both sockets.
        """

        thread = self.thread

        if thread is None:
            return

        self.shutdown = True
        thread.join()
        self.thread = None

        logger.info('broker stopped after forwarding %d messages', self.forwarded)


    def run(self):

        poller = zmq.Poller()
        poller.register(self.pull, zmq.POLLIN)
        poller.register(self.xpub, zmq.POLLIN)

        try:
            while self.shutdown == False:
                sockets = poller.poll(100)
                for active, flag in sockets:
                    if active == self.pull:
                        self._forward(self.pull.recv_multipart())
                    elif active == self.xpub:
                        self._subscription(self.xpub.recv())
        finally:
            self.pull.close()
            self.xpub.close()


    def _forward(self, parts):

        if len(parts) != 2:
            logger.warning('broker dropping message with %d frames', len(parts))
            return

        self.xpub.send_multipart(parts)
        self.forwarded += 1


    def _subscription(self, notice):
        """ XPUB hands up subscription changes as a single frame: one byte,
            1 for subscribe or 0 for unsubscribe, followed by the topic.
        """

        if notice == b'':
            return

        if notice[0] == 1:
            action = 'subscribe'
        else:
            action = 'unsubscribe'

        logger.debug('broker %s %r', action, notice[1:])


# end of class Broker


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
