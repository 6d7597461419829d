"""
MessageBox client for BSV: store-and-forward messaging between identity keys,
with live push delivery, overlay host discovery and message payments.
"""

from .advertisement import AdvertisementToken
from .client import MessageBoxClient
from .config import ClientConfig
from .delivery import SendResult
from .errors import (
    AggregateError, ChannelError, DirectoryError, EnvelopeError, IdentityError, MessageBoxError,
    PaymentError, PublishError, TransportError, ValidationError, WalletError,
)
from .inbox import PeerMessage
from .log import disable as disable_logging, enable as enable_logging
from .payments import Permission, Quote
from .peerpay import IncomingPayment, PaymentToken, PeerPayClient
from .wallet import KeyWallet, Wallet

__version__ = "0.1.0"
