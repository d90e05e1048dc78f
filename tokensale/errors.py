class TokenSaleError(Exception):
    pass


class ConfigInvalid(TokenSaleError):

    def __init__(self, path, reason):
        super(ConfigInvalid, self).__init__("{}: {}".format(path, reason))
        self.path = path
        self.reason = reason


class LengthMismatch(TokenSaleError):

    def __init__(self, what, lengths):
        super(LengthMismatch, self).__init__(
            "The number of {} do not match: {}".format(what, list(lengths)))
        self.lengths = list(lengths)


class ChainRejected(TokenSaleError):
    """ The chain executed the transaction and refused it (revert / invalid opcode)."""

    def __init__(self, action, message):
        super(ChainRejected, self).__init__("{} rejected: {}".format(action, message))
        self.action = action
        self.message = message


class ChainTimeout(TokenSaleError):
    pass


class ChainUnreachable(TokenSaleError):
    pass


class MissingDisburser(TokenSaleError):

    def __init__(self, beneficiary):
        super(MissingDisburser, self).__init__("Missing disburser for {}".format(beneficiary))
        self.beneficiary = beneficiary


EVM_EXCEPTION_MARKER = 'invalid opcode'


def is_evm_exception(err):
    return isinstance(err, ChainRejected) or EVM_EXCEPTION_MARKER in str(err)
