"""
Block builders and an in-memory RPC adapter for walker tests.
"""
from rpc import Block, EpochInfo, EpochSchedule, PermanentRpcError, SlotSkipped, TransientRpcError

SYSTEM_PROGRAM = "11111111111111111111111111111111"
COMPUTE_BUDGET = "ComputeBudget111111111111111111111111111111"
TOKEN_PROGRAM = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"


def _key(pubkey, signer=False):
    return {"pubkey": pubkey, "signer": signer, "source": "transaction", "writable": True}


def transfer_tx(signature, sender, receiver, lamports, fee_payer=None, err=None, extra_instructions=()):
    fee_payer = fee_payer or sender
    keys = [_key(fee_payer, signer=True)]
    if sender != fee_payer:
        keys.append(_key(sender, signer=True))
    keys += [_key(receiver), _key(SYSTEM_PROGRAM)]
    return {
        "meta": {"err": err, "fee": 5000, "status": {"Ok": None} if err is None else {"Err": err}},
        "transaction": {
            "signatures": [signature],
            "message": {
                "accountKeys": keys,
                "instructions": list(extra_instructions) + [
                    {
                        "parsed": {
                            "info": {"source": sender, "destination": receiver, "lamports": lamports},
                            "type": "transfer",
                        },
                        "program": "system",
                        "programId": SYSTEM_PROGRAM,
                        "stackHeight": None,
                    }
                ],
            },
        },
        "version": "legacy",
    }


def program_tx(signature, fee_payer, program_id=TOKEN_PROGRAM):
    return {
        "meta": {"err": None, "fee": 5000},
        "transaction": {
            "signatures": [signature],
            "message": {
                "accountKeys": [_key(fee_payer, signer=True), _key(program_id)],
                "instructions": [{"accounts": [fee_payer], "data": "3Bxs4h24hBtQy9rw", "programId": program_id}],
            },
        },
        "version": 0,
    }


def block(slot, transactions=(), block_time=1720421680):
    return Block(
        slot=slot,
        blockhash=f"hash-{slot}",
        block_time=block_time,
        parent_slot=slot - 1,
        transactions=list(transactions),
    )


class FakeRpc:
    """
    Serves blocks from a dict; slots not in it are reported as skipped.

    failures maps slot -> number of transient errors to raise before succeeding.
    """

    def __init__(self, blocks=None, failures=None, permanent=(), tip=10 ** 9, epoch=7, slots_per_epoch=100):
        self.blocks = dict(blocks or {})
        self.failures = dict(failures or {})
        self.permanent = set(permanent)
        self.tip = tip
        self.epoch = epoch
        self.slots_per_epoch = slots_per_epoch
        self.block_calls = []
        self.closed = False

    def get_epoch_info(self):
        start = self.epoch * self.slots_per_epoch
        return EpochInfo(epoch=self.epoch, absolute_slot=start + 5, slot_index=5, slots_in_epoch=self.slots_per_epoch)

    def get_current_epoch_start_slot(self):
        return self.get_epoch_info().start_slot

    def get_epoch_schedule(self):
        return EpochSchedule(
            slots_per_epoch=self.slots_per_epoch,
            leader_schedule_slot_offset=self.slots_per_epoch,
            warmup=False,
            first_normal_epoch=0,
            first_normal_slot=0,
        )

    def get_slot(self):
        return self.tip

    def close(self):
        self.closed = True

    def get_block(self, slot):
        self.block_calls.append(slot)
        if slot in self.permanent:
            raise PermanentRpcError("HTTP 401")
        if self.failures.get(slot, 0) > 0:
            self.failures[slot] -= 1
            raise TransientRpcError("read timed out")
        return self.blocks.get(slot, SlotSkipped(slot))
