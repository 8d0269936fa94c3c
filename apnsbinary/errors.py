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


__all__ = ('APNsError', 'InvalidCertificateData', 'InvalidCredential',
           'NotificationTooLarge', 'SessionClosed', 'TransportFailure',
           'FeedbackTruncated')


class APNsError(Exception):
    """ Base class for all errors raised by this library. """


class InvalidCertificateData(APNsError, ValueError):
    """ Certificate blob (PKCS#12 or PEM) could not be decoded. """


class InvalidCredential(APNsError, ValueError):
    """ Certificate is not an APNs push certificate.

        The subject matches neither the development nor the production push
        identity, so we can not tell which servers it is valid for.
    """

    def __init__(self, description):
        super(InvalidCredential, self).__init__(
            "Invalid push certificate - {0}".format(description))
        self.description = description


class NotificationTooLarge(APNsError, ValueError):
    """ Notification payload does not fit into a frame. """

    def __init__(self, notification, size, limit):
        super(NotificationTooLarge, self).__init__(
            "Payload is {0} bytes, at most {1} bytes allowed".format(size, limit))
        self.notification = notification
        self.size = size
        self.limit = limit


class SessionClosed(APNsError):
    """ Operation attempted on a closed session or reader. """


class TransportFailure(APNsError, IOError):
    """ Connect, write or read on the underlying TLS stream has failed. """


class FeedbackTruncated(TransportFailure):
    """ Feedback stream ended in the middle of a record. """

    def __init__(self, expected, received):
        super(FeedbackTruncated, self).__init__(
            "Feedback stream ended after {0} of {1} bytes".format(received, expected))
        self.expected = expected
        self.received = received
