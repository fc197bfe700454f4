from types import SimpleNamespace

import pytest
from solders.pubkey import Pubkey
from solders.signature import Signature

from chain_client import SolanaChainClient


class FakeRpc:
    """Historial de una wallet, más nueva primero, con la semántica before/until de la RPC."""

    def __init__(self, history) -> None:
        self.history = history
        self.befores = []

    async def get_signatures_for_address(self, account, limit=None, before=None, until=None):
        self.befores.append(before)
        sigs = [s for s, _ in self.history]
        start = sigs.index(before) + 1 if before is not None else 0
        end = sigs.index(until) if until is not None else len(sigs)
        page = self.history[start:end][:limit]
        return SimpleNamespace(value=[SimpleNamespace(signature=s, err=e) for s, e in page])

    async def close(self):
        pass


WALLET = str(Pubkey.new_unique())


@pytest.mark.asyncio
async def test_signatures_since_pages_back_to_cursor():
    cursor = Signature.new_unique()
    new = [Signature.new_unique() for _ in range(25)]
    history = [(s, None) for s in new] + [(cursor, None), (Signature.new_unique(), None)]
    history[3] = (new[3], {"InstructionError": [0, "Custom"]})
    rpc = FakeRpc(history)
    chain = SolanaChainClient("http://localhost:8899", client=rpc)

    sigs = await chain.get_signatures_since(WALLET, str(cursor), page_size=10)
    assert sigs == [str(s) for i, s in enumerate(new) if i != 3]
    assert rpc.befores == [None, new[9], new[19]]


@pytest.mark.asyncio
async def test_signatures_since_is_bounded():
    rpc = FakeRpc([(Signature.new_unique(), None) for _ in range(30)])
    chain = SolanaChainClient("http://localhost:8899", client=rpc)

    sigs = await chain.get_signatures_since(WALLET, None, page_size=10, max_pages=2)
    assert len(sigs) == 20
    assert sigs[0] == str(rpc.history[0][0])
