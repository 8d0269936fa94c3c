if __name__ == '__main__':
    import os.path, sys
    sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import os
import json
import time
import pathlib
import datetime
import tempfile
import warnings
import unittest
from binascii import unhexlify
from struct import pack, unpack

import OpenSSL
from mock import patch, Mock, ANY
from OpenSSL.SSL import Error as SSLError, ZeroReturnError, SysCallError, WantReadError
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from apnsbinary import *


DEV_SUBJECT = "Apple Development IOS Push Services: com.example.app"
PROD_SUBJECT = "Apple Production IOS Push Services: com.example.app"
OTHER_SUBJECT = "Apple Worldwide Developer Relations: com.example.app"

UTC = datetime.timezone.utc

_identities = {}


def identity(common_name):
    """ Self-signed (certificate, key) pair, generated once per subject. """
    if common_name not in _identities:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        name = x509.Name([
            x509.NameAttribute(NameOID.USER_ID, "com.example.app"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
        ])
        now = datetime.datetime.now(UTC)
        cert = (x509.CertificateBuilder()
                .subject_name(name)
                .issuer_name(name)
                .public_key(key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - datetime.timedelta(days=1))
                .not_valid_after(now + datetime.timedelta(days=30))
                .sign(key, hashes.SHA256()))
        _identities[common_name] = (cert, key)

    return _identities[common_name]


def p12(common_name, passphrase=None):
    cert, key = identity(common_name)
    if passphrase:
        encryption = serialization.BestAvailableEncryption(passphrase)
    else:
        encryption = serialization.NoEncryption()

    return pkcs12.serialize_key_and_certificates(b"apns", key, cert, None, encryption)


def use_real_errors(myssl):
    """ Mocked OpenSSL.SSL must still raise and catch real exceptions. """
    myssl.Error = SSLError
    myssl.ZeroReturnError = ZeroReturnError
    myssl.SysCallError = SysCallError
    myssl.WantReadError = WantReadError


def feedback_stream(*records):
    return b"".join(pack(">IH", timestamp, len(token)) + token for timestamp, token in records)


def fragments(data, sizes):
    """ Split data into chunks, cycling over sizes. """
    ret = []
    idx = 0
    while data:
        size = sizes[idx % len(sizes)]
        ret.append(data[:size])
        data = data[size:]
        idx += 1

    return ret


class FakeConnection(object):
    """ Feeds predefined chunks to the reader, then reports end of stream. """

    def __init__(self, chunks, address=("feedback.sandbox.push.apple.com", 2196)):
        self.chunks = list(chunks)
        self.address = address
        self.opened = False
        self.close_count = 0
        self.reads = 0

    def open(self):
        self.opened = True

    def recv(self, buffsize):
        self.reads += 1
        if not self.chunks:
            return b""

        chunk = self.chunks.pop(0)
        if isinstance(chunk, Exception):
            raise chunk

        return chunk

    def close(self):
        self.close_count += 1


def mock_connection(address=("gateway.sandbox.push.apple.com", 2195)):
    con = Mock(spec=Connection)
    con.address = address
    return con


class CertificateTest(unittest.TestCase):
    """ Test certificate decoding and classification. """

    def test_pkcs12(self):
        dev = Certificate.from_pkcs12(p12(DEV_SUBJECT))
        prod = Certificate.from_pkcs12(p12(PROD_SUBJECT))

        self.assertEqual(dev.server_type, SANDBOX)
        self.assertEqual(prod.server_type, PRODUCTION)
        self.assertIn("Apple Development IOS Push Services", dev.description)
        self.assertEqual(dev.certificate, identity(DEV_SUBJECT)[0])
        self.assertIsInstance(dev.get_context(), OpenSSL.SSL.Context)

    def test_pkcs12_passphrase(self):
        blob = p12(PROD_SUBJECT, b"secret")
        self.assertEqual(Certificate.from_pkcs12(blob, "secret").server_type, PRODUCTION)
        self.assertRaises(InvalidCertificateData, Certificate.from_pkcs12, blob, "wrong")

    def test_garbage(self):
        self.assertRaises(InvalidCertificateData, Certificate.from_pkcs12, b"not a certificate")
        self.assertRaises(InvalidCertificateData, Certificate.from_pem, "no PEM here")
        # invalid data is a ValueError for those who don't care about details
        self.assertRaises(ValueError, Certificate.from_pkcs12, b"")

    def test_not_a_push_certificate(self):
        with self.assertRaises(InvalidCredential) as ctx:
            Certificate.from_pkcs12(p12(OTHER_SUBJECT))

        self.assertIn("Apple Worldwide Developer Relations", ctx.exception.description)
        self.assertIn("Apple Worldwide Developer Relations", str(ctx.exception))

    def test_classify_server(self):
        self.assertEqual(classify_server(identity(DEV_SUBJECT)[0]), SANDBOX)
        self.assertEqual(classify_server(identity(PROD_SUBJECT)[0]), PRODUCTION)
        self.assertRaises(InvalidCredential, classify_server, identity(OTHER_SUBJECT)[0])

        # wrappers convertible to cryptography certificates are fine too
        wrapper = Mock()
        wrapper.to_cryptography.return_value = identity(PROD_SUBJECT)[0]
        self.assertEqual(classify_server(wrapper), PRODUCTION)

    def test_no_pyopenssl_wrappers(self):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            Certificate.from_pkcs12(p12(DEV_SUBJECT))

        deprecated = [str(w.message) for w in caught
                      if issubclass(w.category, DeprecationWarning) and "pyOpenSSL" in str(w.message)]
        self.assertEqual(deprecated, [])

    def test_key_mismatch(self):
        cert = identity(DEV_SUBJECT)[0]
        key = identity(PROD_SUBJECT)[1]
        self.assertRaises(InvalidCertificateData, Certificate, cert, key)

    def test_pem(self):
        cert, key = identity(DEV_SUBJECT)
        cert_pem = cert.public_bytes(serialization.Encoding.PEM)
        key_pem = key.private_bytes(serialization.Encoding.PEM,
                                    serialization.PrivateFormat.TraditionalOpenSSL,
                                    serialization.NoEncryption())

        # private key inside the certificate file, any order
        combined = Certificate.from_pem((key_pem + cert_pem).decode("ascii"))
        self.assertEqual(combined.server_type, SANDBOX)

        protected = key.private_bytes(serialization.Encoding.PEM,
                                      serialization.PrivateFormat.PKCS8,
                                      serialization.BestAvailableEncryption(b"secret"))
        separate = Certificate.from_pem(cert_pem, protected, passphrase="secret")
        self.assertEqual(separate, combined)
        self.assertRaises(InvalidCertificateData, Certificate.from_pem, cert_pem, protected, "wrong")

    def test_equality(self):
        blob = p12(DEV_SUBJECT)
        first = Certificate.from_pkcs12(blob)
        second = Certificate.from_pkcs12(blob)
        prod = Certificate.from_pkcs12(p12(PROD_SUBJECT))

        self.assertEqual(first, second)
        self.assertEqual(hash(first), hash(second))
        self.assertNotEqual(first, prod)
        self.assertNotEqual(first, blob)

    def test_read_certificate(self):
        blob = p12(DEV_SUBJECT)
        cert = Certificate.from_pkcs12(blob)

        self.assertIs(read_certificate(cert), cert)
        self.assertEqual(read_certificate(blob), cert)

        fd, path = tempfile.mkstemp(suffix=".p12")
        try:
            with os.fdopen(fd, "wb") as fp:
                fp.write(p12(PROD_SUBJECT, b"secret"))

            self.assertEqual(read_certificate(path, "secret").server_type, PRODUCTION)
            self.assertEqual(read_certificate(pathlib.Path(path), b"secret").server_type, PRODUCTION)
        finally:
            os.remove(path)


class EndpointTest(unittest.TestCase):
    """ Test endpoint table. """

    def test_resolve(self):
        self.assertEqual(resolve_endpoint(SANDBOX, PUSH), ("gateway.sandbox.push.apple.com", 2195))
        self.assertEqual(resolve_endpoint(PRODUCTION, PUSH), ("gateway.push.apple.com", 2195))
        self.assertEqual(resolve_endpoint(SANDBOX, FEEDBACK), ("feedback.sandbox.push.apple.com", 2196))
        self.assertEqual(resolve_endpoint(PRODUCTION, FEEDBACK), ("feedback.push.apple.com", 2196))
        self.assertEqual(resolve_endpoint(SANDBOX), resolve_endpoint(SANDBOX, PUSH))

    def test_unknown(self):
        self.assertRaises(ValueError, resolve_endpoint, "staging", PUSH)
        self.assertRaises(ValueError, resolve_endpoint, SANDBOX, "mail")


class NotificationTest(unittest.TestCase):
    """ Test notification framing. """

    def setUp(self):
        self.token = unhexlify("0123456789ABCDEF0123456789ABCDEF0123456789ABCDEF0123456789ABCDEF")
        self.payload = b'{"aps":{"alert":"my alert"}}'
        self.notification = Notification(self.token, self.payload)

    def test_frame(self):
        frame = encode_notification(Notification(b"\xaa\xbb", b'{"aps":{}}'))
        self.assertEqual(frame, b'\x00\x00\x02\xaa\xbb\x00\x0a{"aps":{}}')

    def test_frame_fields(self):
        data = self.notification.frame()
        # |COMMAND|TOKENLEN|TOKEN|PAYLOADLEN|PAYLOAD|
        command, tokenlen = unpack(">BH", data[0:3])
        token = data[3:(3 + tokenlen)]
        payloadlen = unpack(">H", data[(3 + tokenlen):(3 + tokenlen + 2)])[0]
        payload = data[(3 + tokenlen + 2):]

        self.assertEqual(command, 0)
        self.assertEqual(tokenlen, len(self.token))
        self.assertEqual(token, self.token)
        self.assertEqual(payloadlen, len(self.payload))
        self.assertEqual(payload, self.payload)

    def test_deterministic(self):
        same = Notification(self.token, self.payload)
        self.assertEqual(encode_notification(self.notification), encode_notification(same))
        self.assertEqual(self.notification, same)

    def test_size_limit(self):
        largest = Notification(self.token, b"x" * MAX_PAYLOAD_SIZE)
        too_large = Notification(self.token, b"x" * (MAX_PAYLOAD_SIZE + 1))

        self.assertTrue(is_valid(largest))
        self.assertTrue(largest.is_valid())
        self.assertEqual(len(largest.frame()), 1 + 2 + len(self.token) + 2 + MAX_PAYLOAD_SIZE)

        self.assertFalse(is_valid(too_large))
        self.assertFalse(valid_notification(too_large))
        self.assertIsNone(encode_notification(too_large))

        # large token does not count
        self.assertTrue(is_valid(Notification(b"1" * 512, self.payload)))

    def test_utf8_size(self):
        # 3 bytes per character in UTF-8
        self.assertEqual(Notification(self.token, u"冇" * 85).size, 255)
        self.assertFalse(is_valid(Notification(self.token, u"冇" * 86)))

    def test_token_size_limit(self):
        largest = Notification(b"t" * MAX_TOKEN_SIZE, self.payload)
        self.assertEqual(unpack(">H", largest.frame()[1:3])[0], MAX_TOKEN_SIZE)

        with self.assertRaises(ValueError):
            Notification(b"t" * (MAX_TOKEN_SIZE + 1), self.payload)

        # never reaches the session
        con = mock_connection()
        session = PushSession(Certificate.from_pkcs12(p12(DEV_SUBJECT)), con)
        self.assertRaises(ValueError, lambda: session.send(Notification(b"x" * 70000, b"{}")))
        con.send.assert_not_called()

    def test_hex_token(self):
        notification = Notification("0123 4567\n89ab", "{}")
        self.assertEqual(notification.token, b"\x01\x23\x45\x67\x89\xab")
        self.assertEqual(notification.payload, b"{}")
        self.assertEqual(pack_hex_token(" ff 00 "), b"\xff\x00")
        self.assertRaises(ValueError, pack_hex_token, "not hex")

    def test_from_payload(self):
        notification = Notification.from_payload(self.token, {"aps": {"alert": u"冇", "badge": 3}})
        self.assertNotIn(b" ", notification.payload)
        self.assertEqual(json.loads(notification.payload.decode("utf-8")),
                         {"aps": {"alert": u"冇", "badge": 3}})
        self.assertIn(u"冇".encode("utf-8"), notification.payload)


class ConnectionTest(unittest.TestCase):
    """ Test connection over mocked pyOpenSSL. """

    def setUp(self):
        self.cert = Certificate.from_pkcs12(p12(DEV_SUBJECT))
        self.address = ("gateway.sandbox.push.apple.com", 2195)

    @patch('OpenSSL.SSL')
    def test_open_close(self, myssl):
        use_real_errors(myssl)
        con = Connection(self.address, self.cert)
        self.assertTrue(con.is_closed())

        con.open()
        self.assertFalse(con.is_closed())
        myssl.Connection.assert_called_once_with(self.cert.get_context(), ANY)
        ssl_con = myssl.Connection.return_value
        ssl_con.set_tlsext_host_name.assert_called_once_with(b"gateway.sandbox.push.apple.com")
        ssl_con.connect.assert_called_once_with(self.address)
        ssl_con.do_handshake.assert_called_once_with()

        # already open
        con.open()
        self.assertEqual(myssl.Connection.call_count, 1)

        con.close()
        self.assertTrue(con.is_closed())
        ssl_con.shutdown.assert_called_once_with()
        con.close()
        ssl_con.shutdown.assert_called_once_with()

    @patch('OpenSSL.SSL')
    def test_open_failure(self, myssl):
        use_real_errors(myssl)
        myssl.Connection.return_value.do_handshake.side_effect = SSLError("handshake failure")

        con = Connection(self.address, self.cert)
        with self.assertRaises(TransportFailure) as ctx:
            con.open()

        self.assertIsInstance(ctx.exception.__cause__, SSLError)
        self.assertTrue(con.is_closed())

    @patch('OpenSSL.SSL')
    def test_send(self, myssl):
        use_real_errors(myssl)
        con = Connection(self.address, self.cert)
        self.assertRaises(TransportFailure, con.send, b"data")

        con.open()
        con.send(b"data")
        myssl.Connection.return_value.sendall.assert_called_once_with(b"data")

        myssl.Connection.return_value.sendall.side_effect = SysCallError(104, "ECONNRESET")
        self.assertRaises(TransportFailure, con.send, b"data")
        self.assertTrue(con.is_closed())

    @patch('OpenSSL.SSL')
    def test_recv(self, myssl):
        use_real_errors(myssl)
        myssl.Connection.return_value.recv.side_effect = [b"abc", ZeroReturnError()]

        con = Connection(self.address, self.cert)
        con.open()
        self.assertEqual(con.recv(10), b"abc")
        self.assertEqual(con.recv(10), b"")
        self.assertTrue(con.is_closed())
        # closed connection reads nothing
        self.assertEqual(con.recv(10), b"")

    @patch('OpenSSL.SSL')
    def test_recv_eof(self, myssl):
        use_real_errors(myssl)
        myssl.Connection.return_value.recv.side_effect = SysCallError(-1, "Unexpected EOF")

        con = Connection(self.address, self.cert)
        con.open()
        self.assertEqual(con.recv(10), b"")
        self.assertTrue(con.is_closed())

    @patch('OpenSSL.SSL')
    def test_recv_failure(self, myssl):
        use_real_errors(myssl)
        myssl.Connection.return_value.recv.side_effect = SysCallError(104, "ECONNRESET")

        con = Connection(self.address, self.cert)
        con.open()
        self.assertRaises(TransportFailure, con.recv, 10)
        self.assertTrue(con.is_closed())


class PushSessionTest(unittest.TestCase):
    """ Test push session state. """

    def setUp(self):
        self.cert = Certificate.from_pkcs12(p12(DEV_SUBJECT))
        self.notification = Notification(b"\x01\x02\x03\x04", b'{"aps":{"alert":"hi"}}')

    def test_default_connection(self):
        with patch.object(PushSession, 'connection_class') as myclass:
            session = PushSession(self.cert)

        myclass.assert_called_once_with(("gateway.sandbox.push.apple.com", 2195), self.cert)
        myclass.return_value.open.assert_called_once_with()
        self.assertFalse(session.closed)
        self.assertIs(session.certificate, self.cert)

    def test_production_connection(self):
        cert = Certificate.from_pkcs12(p12(PROD_SUBJECT))
        with patch.object(PushSession, 'connection_class') as myclass:
            PushSession(cert)

        myclass.assert_called_once_with(("gateway.push.apple.com", 2195), cert)

    def test_send(self):
        con = mock_connection()
        session = PushSession(self.cert, con)
        con.open.assert_called_once_with()

        session.send(self.notification)
        con.send.assert_called_once_with(self.notification.frame())

    def test_send_closed(self):
        con = mock_connection()
        session = PushSession(self.cert, con)
        session.close()

        self.assertRaises(SessionClosed, session.send, self.notification)
        con.send.assert_not_called()

    def test_too_large(self):
        con = mock_connection()
        session = PushSession(self.cert, con)
        large = Notification(b"\x01", b"x" * 300)

        with self.assertRaises(NotificationTooLarge) as ctx:
            session.send(large)

        self.assertIs(ctx.exception.notification, large)
        self.assertEqual(ctx.exception.size, 300)
        self.assertEqual(ctx.exception.limit, MAX_PAYLOAD_SIZE)
        con.send.assert_not_called()
        # recoverable, session is still usable
        self.assertFalse(session.closed)
        session.send(self.notification)

    def test_transport_failure(self):
        con = mock_connection()
        con.send.side_effect = TransportFailure("broken pipe")
        session = PushSession(self.cert, con)

        self.assertRaises(TransportFailure, session.send, self.notification)
        self.assertTrue(session.closed)
        con.close.assert_called_once_with()
        self.assertRaises(SessionClosed, session.send, self.notification)
        self.assertEqual(con.send.call_count, 1)

    def test_open_failure(self):
        con = mock_connection()
        con.open.side_effect = TransportFailure("refused")
        self.assertRaises(TransportFailure, PushSession, self.cert, con)

    def test_close_idempotent(self):
        con = mock_connection()
        session = PushSession(self.cert, con)
        session.close()
        session.close()

        self.assertTrue(session.closed)
        con.close.assert_called_once_with()

    def test_context_manager(self):
        con = mock_connection()
        with self.assertRaises(RuntimeError):
            with PushSession(self.cert, con) as session:
                session.send(self.notification)
                raise RuntimeError("caller failure")

        self.assertTrue(session.closed)
        con.close.assert_called_once_with()


class FeedbackReaderTest(unittest.TestCase):
    """ Test feedback stream decoding. """

    def setUp(self):
        self.cert = Certificate.from_pkcs12(p12(DEV_SUBJECT))
        token1 = unhexlify("0123456789ABCDEF0123456789ABCDEF0123456789ABCDEF0123456789ABCDEF")
        token2 = token1[::-1]
        time1 = int(time.time()) - 3600
        time2 = int(time.time()) - 3600 * 72
        self.stream = feedback_stream((time1, token1), (time2, token2), (0, b""))
        self.golden = [
            FeedbackRecord(token1, datetime.datetime.fromtimestamp(time1, UTC)),
            FeedbackRecord(token2, datetime.datetime.fromtimestamp(time2, UTC)),
            FeedbackRecord(b"", datetime.datetime.fromtimestamp(0, UTC)),
        ]

    def read(self, chunks):
        con = FakeConnection(chunks)
        reader = FeedbackReader(self.cert, con)
        self.assertTrue(con.opened)
        return reader, con

    def test_single_read(self):
        reader, con = self.read([self.stream])
        self.assertEqual(list(reader), self.golden)
        self.assertTrue(reader.closed)
        self.assertEqual(con.close_count, 1)

    def test_fragmentation(self):
        for sizes in ([1], [2], [3], [5], [7], [1, 4, 2, 9], [40, 1]):
            reader, con = self.read(fragments(self.stream, sizes))
            self.assertEqual(list(reader), self.golden, "fragments of %r" % (sizes, ))
            self.assertEqual(con.close_count, 1)

    def test_split_header(self):
        stream = feedback_stream((1000, b"\xaa\xbb"))
        expected = [FeedbackRecord(b"\xaa\xbb", datetime.datetime(1970, 1, 1, 0, 16, 40, tzinfo=UTC))]

        for chunks in ([stream], [stream[:3], stream[3:]], fragments(stream, [1])):
            reader, con = self.read(chunks)
            self.assertEqual(list(reader), expected)

        self.assertEqual(expected[0].hex_token, "AABB")
        token, when = expected[0]
        self.assertEqual(when.timestamp(), 1000)

    def test_empty(self):
        reader, con = self.read([])
        self.assertEqual(reader.read_all(), [])
        self.assertEqual(con.close_count, 1)

    def test_next(self):
        reader, con = self.read(fragments(self.stream, [4]))
        self.assertEqual(next(reader), self.golden[0])
        self.assertFalse(reader.closed)
        self.assertEqual(reader.read_all(), self.golden[1:])
        # not restartable
        self.assertRaises(StopIteration, next, reader)
        self.assertEqual(reader.read_all(), [])

    def test_truncated_header(self):
        reader, con = self.read([self.stream[:4]])
        with self.assertRaises(FeedbackTruncated) as ctx:
            next(reader)

        self.assertEqual(ctx.exception.expected, 6)
        self.assertEqual(ctx.exception.received, 4)
        self.assertTrue(reader.closed)
        self.assertEqual(con.close_count, 1)

    def test_truncated_token(self):
        # first record complete, second one stops in the token
        chunks = fragments(self.stream[:38 + 16], [5])
        reader, con = self.read(chunks)
        records = []
        with self.assertRaises(FeedbackTruncated) as ctx:
            for record in reader:
                records.append(record)

        self.assertEqual(records, self.golden[:1])
        self.assertEqual(ctx.exception.expected, 38)
        self.assertEqual(ctx.exception.received, 16)
        self.assertIsInstance(ctx.exception, TransportFailure)
        self.assertEqual(con.close_count, 1)

    def test_transport_failure(self):
        reader, con = self.read([self.stream[:40], TransportFailure("reset")])
        self.assertEqual(next(reader), self.golden[0])
        self.assertRaises(TransportFailure, next, reader)
        self.assertTrue(reader.closed)
        self.assertEqual(con.close_count, 1)

    def test_close_idempotent(self):
        reader, con = self.read([self.stream])
        with reader:
            next(reader)

        self.assertTrue(reader.closed)
        reader.close()
        self.assertEqual(con.close_count, 1)
        self.assertEqual(list(reader), [])

    def test_buffsize(self):
        con = FakeConnection([])
        reader = FeedbackReader(self.cert, con, buffsize=16)
        self.assertEqual(reader.buffsize, 16)
        self.assertEqual(FeedbackReader.buffsize, 2048)

    @patch('OpenSSL.SSL')
    def test_feedback_connection(self, myssl):
        use_real_errors(myssl)
        token = unhexlify("0123456789ABCDEF")
        curtime = int(time.time())
        data = pack(">IH%ds" % len(token), curtime, len(token), token)
        myssl.Connection.return_value.recv.side_effect = [data[:5], data[5:], ZeroReturnError()]

        reader = FeedbackReader(self.cert)
        feed = list(reader)

        myssl.Connection.return_value.connect.assert_called_once_with(("feedback.sandbox.push.apple.com", 2196))
        self.assertEqual(len(feed), 1)
        self.assertEqual(feed[0], (token, datetime.datetime.fromtimestamp(curtime, UTC)))
        self.assertEqual(feed[0].hex_token, "0123456789ABCDEF")
        self.assertTrue(reader.closed)


class BulkTest(unittest.TestCase):
    """ Test bulk helpers. """

    def setUp(self):
        self.cert = Certificate.from_pkcs12(p12(PROD_SUBJECT))
        self.notifications = [
            Notification(pack(">I", idx), '{"aps":{"badge":%d}}' % idx) for idx in range(6)]

    def frames(self, con):
        return [call[0][0] for call in con.send.call_args_list]

    def test_collection(self):
        with patch.object(PushSession, 'connection_class') as myclass:
            sent = push_notifications(self.cert, self.notifications[:3])

        con = myclass.return_value
        myclass.assert_called_once_with(("gateway.push.apple.com", 2195), self.cert)
        self.assertEqual(sent, 3)
        self.assertEqual(self.frames(con), [n.frame() for n in self.notifications[:3]])
        con.close.assert_called_once_with()

    def test_single(self):
        with patch.object(PushSession, 'connection_class') as myclass:
            self.assertEqual(push_notification(self.notifications[0], self.cert), 1)
            self.assertEqual(push_notifications(self.cert, self.notifications[1]), 1)

        con = myclass.return_value
        self.assertEqual(self.frames(con), [n.frame() for n in self.notifications[:2]])

    def test_pull_callable(self):
        n = self.notifications
        source = Mock(side_effect=[[n[1], n[2]], n[3], None, n[4]])
        with patch.object(PushSession, 'connection_class') as myclass:
            sent = push_notifications(self.cert, [n[0]], source)

        con = myclass.return_value
        self.assertEqual(sent, 4)
        self.assertEqual(source.call_count, 3)
        self.assertEqual(self.frames(con), [x.frame() for x in n[:4]])
        con.close.assert_called_once_with()

    def test_pull_generator(self):
        def source():
            yield self.notifications[2]
            yield self.notifications[3:]

        with patch.object(PushSession, 'connection_class') as myclass:
            sent = push_notifications(self.cert, source=source())

        self.assertEqual(sent, 4)
        self.assertEqual(self.frames(myclass.return_value), [n.frame() for n in self.notifications[2:]])

    def test_failure_closes(self):
        batch = [self.notifications[0], Notification(b"\x01", b"x" * 257), self.notifications[1]]
        with patch.object(PushSession, 'connection_class') as myclass:
            self.assertRaises(NotificationTooLarge, push_notifications, self.cert, batch)

        con = myclass.return_value
        self.assertEqual(self.frames(con), [self.notifications[0].frame()])
        con.close.assert_called_once_with()

    def test_push_feedback(self):
        token = b"\xaa\xbb"
        chunks = fragments(feedback_stream((1000, token), (2000, token)), [3])
        expected = [
            FeedbackRecord(token, datetime.datetime.fromtimestamp(1000, UTC)),
            FeedbackRecord(token, datetime.datetime.fromtimestamp(2000, UTC)),
        ]

        with patch.object(FeedbackReader, 'connection_class', return_value=FakeConnection(chunks)) as myclass:
            self.assertEqual(push_feedback(self.cert), expected)

        myclass.assert_called_once_with(("feedback.push.apple.com", 2196), self.cert)
        self.assertEqual(myclass.return_value.close_count, 1)

        received = []
        with patch.object(FeedbackReader, 'connection_class', return_value=FakeConnection(chunks)) as myclass:
            self.assertIsNone(push_feedback(self.cert, received.append))

        self.assertEqual(received, expected)
        self.assertEqual(myclass.return_value.close_count, 1)


if __name__ == '__main__':
    unittest.main()
