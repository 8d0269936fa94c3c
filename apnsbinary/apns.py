# Copyright 2013 Getlogic BV, Sardar Yumatov
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import os
import re
import json
import socket
import logging
import datetime
from binascii import hexlify, unhexlify
from collections import namedtuple
from struct import pack, unpack, calcsize

import OpenSSL
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from apnsbinary.errors import (InvalidCertificateData, InvalidCredential,
                               NotificationTooLarge, SessionClosed,
                               TransportFailure, FeedbackTruncated)


__all__ = ('SANDBOX', 'PRODUCTION', 'PUSH', 'FEEDBACK', 'ADDRESSES',
           'MAX_PAYLOAD_SIZE', 'MAX_TOKEN_SIZE', 'Certificate', 'read_certificate',
           'classify_server', 'resolve_endpoint', 'pack_hex_token',
           'Notification', 'encode_notification', 'is_valid',
           'valid_notification', 'Connection', 'PushSession',
           'FeedbackRecord', 'FeedbackReader', 'open_push_session',
           'open_feedback_reader', 'push_notification', 'push_notifications',
           'push_feedback')

logger = logging.getLogger(__name__)

# Server populations.
SANDBOX = "sandbox"
PRODUCTION = "production"

# Services.
PUSH = "push"
FEEDBACK = "feedback"

# Default APNs addresses.
ADDRESSES = {
    (SANDBOX, PUSH): ("gateway.sandbox.push.apple.com", 2195),
    (PRODUCTION, PUSH): ("gateway.push.apple.com", 2195),
    (SANDBOX, FEEDBACK): ("feedback.sandbox.push.apple.com", 2196),
    (PRODUCTION, FEEDBACK): ("feedback.push.apple.com", 2196),
}

# Subject patterns of push certificates issued by Apple, first match wins.
SERVER_PATTERNS = (
    (SANDBOX, re.compile(r"Apple Development (?:\w+ )?Push")),
    (PRODUCTION, re.compile(r"Apple Production (?:\w+ )?Push")),
)

# Largest payload APNs accepts in a simple notification.
MAX_PAYLOAD_SIZE = 256

# Token length is a 2-byte field in the frame.
MAX_TOKEN_SIZE = 0xFFFF

# |TIMESTAMP|TOKENLEN|
FEEDBACK_HEADER_FORMAT = ">IH"
FEEDBACK_HEADER_SIZE = calcsize(FEEDBACK_HEADER_FORMAT)

_PEM_CERTIFICATE = re.compile(
    br"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.S)
_PEM_PRIVATE_KEY = re.compile(
    br"-----BEGIN ([A-Z ]*)PRIVATE KEY-----.+?-----END \1PRIVATE KEY-----", re.S)


def classify_server(cert):
    """ Returns server population the push certificate is valid for.

        :Arguments:
            - `cert` (``cryptography.x509.Certificate``): the provider's
              certificate. Anything with ``to_cryptography()`` is converted.

        :Returns:
            :data:`SANDBOX` or :data:`PRODUCTION`.

        :Raises:
            :class:`InvalidCredential` if the certificate is not a push certificate.
    """
    if hasattr(cert, "to_cryptography"):
        cert = cert.to_cryptography()

    subject = cert.subject.rfc4514_string()
    for server_type, pattern in SERVER_PATTERNS:
        if pattern.search(subject):
            return server_type

    raise InvalidCredential(subject)


def resolve_endpoint(server_type, service=PUSH):
    """ Returns ``(host, port)`` of the APNs service for given population. """
    address = ADDRESSES.get((server_type, service))
    if address is None:
        raise ValueError("Unknown address mapping: {0}/{1}".format(server_type, service))

    return address


class Certificate(object):
    """ Certificate with private key. """

    def __init__(self, certificate, private_key):
        """ Provider's certificate and private key.

            The server population is derived from the certificate subject once,
            here, and never changes afterwards. Usually you don't call this
            directly, use :func:`from_pkcs12` or :func:`from_pem`.

            :Arguments:
                - `certificate` (``cryptography.x509.Certificate``): provider's certificate.
                - `private_key`: matching private key from ``cryptography``.
        """
        self._certificate = certificate
        self._private_key = private_key
        self._server_type = classify_server(certificate)

        self._context = OpenSSL.SSL.Context(OpenSSL.SSL.TLS_CLIENT_METHOD)
        try:
            self._context.use_certificate(certificate)
            self._context.use_privatekey(private_key)
            # check if we are not passed some garbage
            self._context.check_privatekey()
        except (OpenSSL.SSL.Error, TypeError) as exc:
            raise InvalidCertificateData("Certificate and private key do not match") from exc

        # used to compare certificates.
        self._equality = certificate.public_bytes(serialization.Encoding.DER)

    @classmethod
    def from_pkcs12(cls, blob, passphrase=None):
        """ Decode certificate and private key from PKCS#12 (.p12) data.

            :Arguments:
                - `blob` (bytes): content of the .p12 file.
                - `passphrase` (str or bytes): passphrase the file is protected with.
        """
        if isinstance(passphrase, str):
            passphrase = passphrase.encode("utf-8")

        try:
            key, cert, _ = pkcs12.load_key_and_certificates(blob, passphrase)
        except (ValueError, TypeError) as exc:
            raise InvalidCertificateData("Can not decode PKCS#12 data") from exc

        if cert is None or key is None:
            raise InvalidCertificateData("PKCS#12 data has no certificate or private key")

        return cls(cert, key)

    @classmethod
    def from_pem(cls, cert_string, key_string=None, passphrase=None):
        """ Decode certificate and private key in PEM format.

            Your certificate will probably contain the private key. The
            certificate is enclosed in ``BEGIN/END CERTIFICATE`` strings and
            private key is in ``BEGIN/END RSA PRIVATE KEY`` section. If you can
            not find the private key in your .pem file, then you should
            provide it with `key_string` argument.

            :Arguments:
                - `cert_string` (str or bytes): certificate in PEM format.
                - `key_string` (str or bytes): private key in PEM format.
                - `passphrase` (str or bytes): passphrase for your private key.
        """
        if isinstance(cert_string, str):
            cert_string = cert_string.encode("ascii")

        if isinstance(key_string, str):
            key_string = key_string.encode("ascii")

        if isinstance(passphrase, str):
            passphrase = passphrase.encode("utf-8")

        cert_block = _PEM_CERTIFICATE.search(cert_string)
        key_block = _PEM_PRIVATE_KEY.search(key_string or cert_string)
        if cert_block is None or key_block is None:
            raise InvalidCertificateData("PEM data has no certificate or private key")

        try:
            cert = x509.load_pem_x509_certificate(cert_block.group(0))
            key = serialization.load_pem_private_key(key_block.group(0), password=passphrase)
        except (ValueError, TypeError) as exc:
            raise InvalidCertificateData("Can not decode PEM data") from exc

        return cls(cert, key)

    @property
    def certificate(self):
        """ Provider's certificate. """
        return self._certificate

    @property
    def private_key(self):
        """ Provider's private key. """
        return self._private_key

    @property
    def server_type(self):
        """ Server population this certificate is valid for. """
        return self._server_type

    @property
    def description(self):
        """ Certificate subject as RFC 4514 string. """
        return self._certificate.subject.rfc4514_string()

    def get_context(self):
        """ Returns SSL context instance.

            You may use that context to specify required verification level,
            trusted CA's etc.
        """
        return self._context

    def __hash__(self):
        return hash(self._equality)

    def __eq__(self, other):
        if isinstance(other, Certificate):
            return self._equality == other._equality

        return False

    def __repr__(self):
        return "Certificate({0!r}, {1})".format(self.description, self._server_type)


def read_certificate(certificate, passphrase=None):
    """ Obtain :class:`Certificate` from whatever the caller has.

        :Arguments:
            - `certificate`: :class:`Certificate` instance, path to a .p12 file
              or the content of a .p12 file as ``bytes``.
            - `passphrase` (str or bytes): passphrase for the .p12 data.
    """
    if isinstance(certificate, Certificate):
        return certificate

    if isinstance(certificate, (str, os.PathLike)):
        with open(certificate, "rb") as fp:
            certificate = fp.read()

    return Certificate.from_pkcs12(certificate, passphrase)


def pack_hex_token(hex_token):
    """ Packs a hexadecimal device token into binary form. Whitespace is ignored. """
    return unhexlify(re.sub(r"\s", "", hex_token))


class Notification(object):
    """ The notification to a single device. """
    # JSON serialization parameters for from_payload(). Assume UTF-8 by default.
    json_parameters = {
        'separators': (',', ':'),
        'ensure_ascii': False,
    }

    def __init__(self, token, payload):
        """ The push notification.

            The payload is opaque to this library, only its size matters.

            :Arguments:
                - `token` (bytes or str): binary device token, hex string is packed.
                - `payload` (bytes or str): serialized payload, str is UTF-8 encoded.
        """
        if isinstance(token, str):
            token = pack_hex_token(token)

        if isinstance(payload, str):
            payload = payload.encode("utf-8")

        if len(token) > MAX_TOKEN_SIZE:
            raise ValueError("Device token is {0} bytes, at most {1} bytes allowed".format(
                len(token), MAX_TOKEN_SIZE))

        self.token = bytes(token)
        self.payload = bytes(payload)

    @classmethod
    def from_payload(cls, token, payload):
        """ Notification with JSON-encoded ``payload`` dict. """
        return cls(token, json.dumps(payload, **cls.json_parameters).encode("utf-8"))

    @property
    def size(self):
        """ Payload size in bytes. """
        return len(self.payload)

    def is_valid(self):
        """ Returns True if payload fits into a frame. """
        return self.size <= MAX_PAYLOAD_SIZE

    def frame(self):
        """ Binary frame, see :func:`encode_notification`. """
        return encode_notification(self)

    def __eq__(self, other):
        if isinstance(other, Notification):
            return self.token == other.token and self.payload == other.payload

        return NotImplemented

    def __hash__(self):
        return hash((self.token, self.payload))

    def __repr__(self):
        return "Notification({0!r}, {1!r})".format(hexlify(self.token).decode("ascii"), self.payload)


def encode_notification(notification):
    """ Encodes notification into a binary frame for APNs.

        :Returns:
            ``bytes`` frame, or ``None`` if the payload exceeds :data:`MAX_PAYLOAD_SIZE`.
    """
    token = notification.token
    payload = notification.payload
    if len(payload) > MAX_PAYLOAD_SIZE:
        return None

    # |COMMAND|TOKENLEN|TOKEN|PAYLOADLEN|PAYLOAD|
    fmt = ">BH%dsH%ds" % (len(token), len(payload))
    return pack(fmt, 0, len(token), token, len(payload), payload)


def is_valid(notification):
    """ Returns True if notification fits into an APNs frame. """
    return encode_notification(notification) is not None


valid_notification = is_valid


class Connection(object):
    """ Connection to APNs. """

    def __init__(self, address, certificate):
        """ Connection to APNs.

            The connection is a low-level object, you may use it directly if
            you plan to configure it to your needs (eg. SSL verification or
            socket timeouts). It is not thread safe, one reader or writer at
            a time.

            :Arguments:
                - `address` (tuple): address as (host, port) tuple.
                - `certificate` (:class:`Certificate`): provider's certificate.
        """
        self._address = address
        self._certificate = certificate
        self._socket = None
        self._connection = None

    @property
    def address(self):
        """ Target address. """
        return self._address

    @property
    def certificate(self):
        """ Provider's certificate. """
        return self._certificate

    def close(self):
        """ Close this connection. Closing closed connection does nothing. """
        if self._socket is not None:
            logger.debug("Closing connection to %s:%s", *self._address)
            if self._connection is not None:
                try:
                    # tell SSL socket we are done
                    self._connection.shutdown()
                except (OpenSSL.SSL.Error, OSError) as exc:
                    logger.debug("SSL shutdown failed: %s", exc)

            try:
                self._socket.close()
            except OSError as exc:
                logger.debug("Socket close failed: %s", exc)

            self._socket = None
            self._connection = None

    def is_closed(self):
        """ Returns True if this connection is closed.

            .. note:
                If other end closes connection by itself, then this connection will
                report open until next IO operation.
        """
        return self._socket is None

    def _create_socket(self):
        """ Create new plain TCP socket. Hook that you may override. """
        return socket.socket(socket.AF_INET, socket.SOCK_STREAM)

    def configure_socket(self):
        """ Hook to configure socket parameters, eg. timeouts. """
        pass

    def _create_openssl_connection(self):
        """ Create new OpenSSL connection. Hook that you may override. """
        return OpenSSL.SSL.Connection(self._certificate.get_context(), self._socket)

    def configure_connection(self):
        """ Hook to configure SSL connection. Sets SNI by default. """
        self._connection.set_tlsext_host_name(self._address[0].encode("ascii"))

    def _connect_and_handshake(self):
        """ Connect to APNs and SSL handshake. Hook that you may override. """
        self._connection.connect(self._address)
        self._connection.do_handshake()

    def open(self):
        """ Connect and handshake unless already open.

            :Raises:
                :class:`TransportFailure` if connection could not be established.
        """
        if self._socket is None:
            logger.debug("Connecting to %s:%s", *self._address)
            try:
                self._socket = self._create_socket()
                self.configure_socket()
                self._connection = self._create_openssl_connection()
                self.configure_connection()
                self._connect_and_handshake()
            except (OpenSSL.SSL.Error, OSError) as exc:
                self.close()
                logger.warning("Can not connect to %s:%s: %s", self._address[0], self._address[1], exc)
                raise TransportFailure("Can not connect to {0}:{1}".format(*self._address)) from exc

    def send(self, chunk):
        """ Blocking write to SSL connection.

            :Raises:
                :class:`TransportFailure` if connection is closed or write has
                failed. Failed connection is closed.
        """
        if self.is_closed():
            raise TransportFailure("Connection is closed")

        try:
            self._connection.sendall(chunk)
        except (OpenSSL.SSL.Error, OSError) as exc:
            # underlying connection has been closed or failed
            self.close()
            raise TransportFailure("Write to {0}:{1} failed".format(*self._address)) from exc

    def recv(self, buffsize):
        """ Blocking read of at most ``buffsize`` bytes.

            Unlike standard SSL connection, this method returns empty bytes if
            other end has closed the connection, and then closes this end too.
        """
        if self.is_closed():
            return b""

        try:
            ret = self._connection.recv(buffsize)
        except OpenSSL.SSL.ZeroReturnError:
            # SSL protocol alerted close. We have a nice shutdown here.
            ret = b""
        except OpenSSL.SSL.SysCallError as exc:
            if exc.args[0] != -1:
                self.close()
                raise TransportFailure("Read from {0}:{1} failed".format(*self._address)) from exc

            # EOF without SSL shutdown, APNs does that all the time
            ret = b""
        except (OpenSSL.SSL.Error, OSError) as exc:
            self.close()
            raise TransportFailure("Read from {0}:{1} failed".format(*self._address)) from exc

        if not ret:
            self.close()

        return ret


def _as_batch(notifications):
    if isinstance(notifications, Notification):
        return (notifications, )

    return notifications


class PushSession(object):
    """ Session with the push gateway. """
    # Connection wrapper class to use
    connection_class = Connection

    def __init__(self, certificate, connection=None):
        """ Connected, write-only session with the push gateway.

            The gateway is resolved from the certificate's server population.
            The connection is established right away. Use the session in
            ``with`` statement, so the connection is released on any exit::

                with PushSession(certificate) as session:
                    session.send(Notification(token, b'{"aps":{"alert":"Hi"}}'))

            :Arguments:
                - `certificate` (:class:`Certificate`): provider's certificate.
                - `connection` (:class:`Connection`): not yet opened connection
                  to use instead of the default one.
        """
        if connection is None:
            address = resolve_endpoint(certificate.server_type, PUSH)
            connection = self.connection_class(address, certificate)

        self._certificate = certificate
        self._connection = connection
        self._closed = False
        # may raise, connection cleans up by itself
        self._connection.open()
        logger.info("Push session opened to %s", connection.address)

    @property
    def certificate(self):
        """ Provider's certificate. """
        return self._certificate

    @property
    def closed(self):
        """ True once the session is closed. """
        return self._closed

    def send(self, notification):
        """ Frame and write the notification.

            APNs does not acknowledge notifications, a successful return means
            the frame is handed to the transport.

            :Raises:
                - :class:`SessionClosed` if the session is closed.
                - :class:`NotificationTooLarge` if the payload does not fit.
                - :class:`TransportFailure` if write has failed. The session
                  is closed then.
        """
        if self._closed:
            raise SessionClosed("Push session is closed")

        frame = encode_notification(notification)
        if frame is None:
            raise NotificationTooLarge(notification, notification.size, MAX_PAYLOAD_SIZE)

        try:
            self._connection.send(frame)
        except TransportFailure as exc:
            logger.warning("Push session to %s failed: %s", self._connection.address, exc)
            self.close()
            raise

    def close(self):
        """ Close the session. Closing closed session does nothing. """
        if not self._closed:
            self._closed = True
            self._connection.close()
            logger.debug("Push session to %s closed", self._connection.address)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


class FeedbackRecord(namedtuple('FeedbackRecord', 'token time')):
    """ Device token that rejected notifications and when it did so.

        According to Apple, the record can be ignored if the device has
        registered its token again after ``time``.
    """
    __slots__ = ()

    @property
    def hex_token(self):
        return hexlify(self.token).decode("ascii").upper()


class FeedbackReader(object):
    """ Reader of the feedback service stream. """
    # Connection wrapper class to use
    connection_class = Connection
    # Maximum bytes to request from the transport in one read.
    buffsize = 2048

    def __init__(self, certificate, connection=None, buffsize=None):
        """ Connected reader of the feedback service.

            The reader is an iterator over :class:`FeedbackRecord`. The feedback
            service sends whatever it has and closes the connection, the
            iteration stops there and the reader is closed. The iteration
            can not be restarted, open another reader for that.

            Example::

                with FeedbackReader(certificate) as reader:
                    for record in reader:
                        print("Removing token", record.hex_token)

            :Arguments:
                - `certificate` (:class:`Certificate`): provider's certificate.
                - `connection` (:class:`Connection`): not yet opened connection
                  to use instead of the default one.
                - `buffsize` (int): maximum bytes per transport read.
        """
        if connection is None:
            address = resolve_endpoint(certificate.server_type, FEEDBACK)
            connection = self.connection_class(address, certificate)

        if buffsize is not None:
            self.buffsize = buffsize

        self._certificate = certificate
        self._connection = connection
        self._buffer = b""
        self._closed = False
        self._connection.open()
        logger.debug("Feedback reader opened to %s", connection.address)

    @property
    def closed(self):
        """ True once the reader is closed or exhausted. """
        return self._closed

    def __iter__(self):
        return self

    def __next__(self):
        """ Returns next record.

            :Raises:
                - ``StopIteration`` at the end of the stream or if closed.
                - :class:`FeedbackTruncated` if the stream ends inside a record.
                - :class:`TransportFailure` on IO failures.
        """
        if self._closed:
            raise StopIteration

        try:
            record = self._read_record()
        except TransportFailure as exc:
            logger.warning("Feedback from %s failed: %s", self._connection.address, exc)
            self.close()
            raise

        if record is None:
            self.close()
            raise StopIteration

        logger.debug("Feedback for token %s at %s", record.hex_token, record.time)
        return record

    def read_all(self):
        """ Returns list of all remaining records. """
        return list(self)

    def close(self):
        """ Close the reader. Closing closed reader does nothing. """
        if not self._closed:
            self._closed = True
            self._buffer = b""
            self._connection.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def _read_record(self):
        header = self._read_exactly(FEEDBACK_HEADER_SIZE, 0)
        if header is None:
            return None

        timestamp, length = unpack(FEEDBACK_HEADER_FORMAT, header)
        token = self._read_exactly(length, FEEDBACK_HEADER_SIZE)
        when = datetime.datetime.fromtimestamp(timestamp, datetime.timezone.utc)
        return FeedbackRecord(token, when)

    def _read_exactly(self, size, consumed):
        """ Returns exactly ``size`` bytes, collecting as many reads as needed.

            Returns None if the stream has ended at a record boundary, that is
            ``consumed`` is zero and nothing is buffered.
        """
        while len(self._buffer) < size:
            chunk = self._connection.recv(max(self.buffsize, size - len(self._buffer)))
            if not chunk:
                received = len(self._buffer)
                if consumed == 0 and received == 0:
                    return None

                raise FeedbackTruncated(consumed + size, consumed + received)

            self._buffer += chunk

        ret = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return ret


def open_push_session(certificate, passphrase=None):
    """ Returns connected :class:`PushSession`.

        :Arguments:
            - `certificate`: anything :func:`read_certificate` accepts.
            - `passphrase` (str or bytes): passphrase for the .p12 data.
    """
    return PushSession(read_certificate(certificate, passphrase))


def open_feedback_reader(certificate, passphrase=None):
    """ Returns connected :class:`FeedbackReader`. See :func:`open_push_session`. """
    return FeedbackReader(read_certificate(certificate, passphrase))


def push_notifications(certificate, notifications=(), source=None):
    """ Send notifications over a single push session.

        The initial ``notifications`` are sent first. Then, if ``source`` is
        given, it is pulled for more until it is done: an iterable is done
        when exhausted, a callable is done when it returns ``None``. Every
        pulled item is a :class:`Notification` or an iterable of them. The
        session is closed on return or on the first failure.

        :Arguments:
            - `certificate`: anything :func:`read_certificate` accepts.
            - `notifications`: :class:`Notification` or iterable of them.
            - `source`: iterable or callable producing more notifications.

        :Returns:
            Number of sent notifications.
    """
    sent = 0
    with open_push_session(certificate) as session:
        for notification in _as_batch(notifications):
            session.send(notification)
            sent += 1

        if source is not None:
            if callable(source):
                source = iter(source, None)

            for batch in source:
                for notification in _as_batch(batch):
                    session.send(notification)
                    sent += 1

    logger.info("Pushed %d notifications", sent)
    return sent


def push_notification(notification, certificate):
    """ Send single notification over a fresh push session. """
    return push_notifications(certificate, [notification])


def push_feedback(certificate, callback=None):
    """ Read all available feedback.

        :Arguments:
            - `certificate`: anything :func:`read_certificate` accepts.
            - `callback` (callable): called with every :class:`FeedbackRecord`.

        :Returns:
            List of :class:`FeedbackRecord` if no ``callback`` is given,
            ``None`` otherwise.
    """
    with open_feedback_reader(certificate) as reader:
        if callback is None:
            return reader.read_all()

        for record in reader:
            callback(record)
