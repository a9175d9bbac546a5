import json
from threading import Thread

import pika
from bs4 import BeautifulSoup
from pika.channel import Channel

from ots_federation.extensions import logger
from ots_federation.federation.cot import data_type_for_cot_type
from ots_federation.federation.router import FederationEvent, MessageRouter

EXCHANGES = (
    ("firehose", "fanout"),  # Every CoT the server handles
    ("missions", "topic"),   # Data Sync mission feeds
)


class FederationConsumer:
    """Feeds CoT from the server's RabbitMQ exchanges into the message router"""

    def __init__(self, app, router: MessageRouter):
        self.app = app
        self.router = router
        self.node_id = app.config.get("OTS_NODE_ID")
        self.rabbit_connection = None
        self.rabbit_channel: Channel = None
        self.iothread = None
        self.queues = []

    def start(self):
        credentials = pika.PlainCredentials(self.app.config.get("OTS_RABBITMQ_USERNAME"),
                                            self.app.config.get("OTS_RABBITMQ_PASSWORD"))
        try:
            self.rabbit_connection = pika.SelectConnection(
                pika.ConnectionParameters(host=self.app.config.get("OTS_RABBITMQ_SERVER_ADDRESS"),
                                          credentials=credentials),
                on_open_callback=self.on_connection_open,
                on_open_error_callback=self.on_connection_open_error)
        except BaseException as e:
            logger.error(f"Failed to connect to rabbitmq: {e}")
            return False

        self.iothread = Thread(target=self.rabbit_connection.ioloop.start, daemon=True, name="FederationConsumer")
        self.iothread.start()
        return True

    def stop(self):
        if self.rabbit_connection and self.rabbit_connection.is_open:
            self.rabbit_connection.close()

    def on_connection_open(self, connection):
        connection.channel(on_open_callback=self.on_channel_open)
        connection.add_on_close_callback(self.on_close)

    def on_connection_open_error(self, connection, error):
        logger.error(f"Federation consumer could not connect to RabbitMQ: {error}")
        connection.ioloop.stop()

    def on_channel_open(self, channel: Channel):
        self.rabbit_channel = channel
        for exchange, exchange_type in EXCHANGES:
            channel.exchange_declare(exchange=exchange, exchange_type=exchange_type, durable=True)
        channel.queue_declare(queue='', exclusive=True, callback=self.on_queue_declared)

    def on_queue_declared(self, frame):
        queue = frame.method.queue
        self.queues.append(queue)
        for exchange, exchange_type in EXCHANGES:
            routing_key = '#' if exchange_type == 'topic' else ''
            self.rabbit_channel.queue_bind(exchange=exchange, queue=queue, routing_key=routing_key)
        self.rabbit_channel.basic_consume(queue=queue, on_message_callback=self.on_message, auto_ack=True)
        logger.info(f"Federation consumer bound to {', '.join(e for e, _ in EXCHANGES)}")

    def on_close(self, connection, error):
        logger.warning(f"Federation consumer closing RabbitMQ connection: {error}")
        connection.ioloop.stop()

    def on_message(self, unused_channel, basic_deliver, properties, body):
        event = self.parse(body)
        if event:
            self.router.publish(event)

    def parse(self, body):
        """Turn a {"cot": ..., "uid": ...} message into a FederationEvent. Returns None for messages to skip"""
        try:
            body = json.loads(body)
            cot = body['cot']
        except (ValueError, KeyError, TypeError) as e:
            logger.debug(f"Ignoring malformed message: {e}")
            return None

        soup = BeautifulSoup(cot, 'xml')
        event = soup.find('event')
        if not event:
            return None

        uid = body.get('uid') or event.attrs.get('uid')
        # Don't send our own heartbeats and server generated messages back out
        if uid == self.node_id or (uid and uid.startswith(f"{self.node_id}-")):
            return None

        data_type = data_type_for_cot_type(event.attrs.get('type', ''))
        return FederationEvent(data_type=data_type, payload=cot.encode('utf-8'), uid=uid)
