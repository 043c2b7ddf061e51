"""
KAIJU TRADER — Contract ABIs
Minimal fragments of the Uniswap-V2 router, ERC20 and the perpetual exchange.
"""


def _fn(name, inputs, outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
    }


UNISWAP_V2_ROUTER_ABI = [
    _fn(
        "swapExactTokensForTokens",
        [("amountIn", "uint256"), ("amountOutMin", "uint256"), ("path", "address[]"),
         ("to", "address"), ("deadline", "uint256")],
        [("amounts", "uint256[]")],
    ),
    _fn(
        "getAmountsOut",
        [("amountIn", "uint256"), ("path", "address[]")],
        [("amounts", "uint256[]")],
        "view",
    ),
]

ERC20_ABI = [
    _fn("balanceOf", [("owner", "address")], [("", "uint256")], "view"),
    _fn("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")], "view"),
    _fn("approve", [("spender", "address"), ("amount", "uint256")], [("", "bool")]),
    _fn("decimals", [], [("", "uint8")], "view"),
]

PERPETUAL_EXCHANGE_ABI = [
    _fn(
        "openPosition",
        [("asset", "string"), ("isLong", "bool"), ("collateral", "uint256"), ("leverage", "uint256")],
        [("", "uint256")],
    ),
    _fn("closePosition", [("positionId", "uint256")]),
    {
        "type": "function",
        "name": "getUserAccount",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "totalCollateral", "type": "uint256"},
                {"name": "usedCollateral", "type": "uint256"},
                {"name": "positionIds", "type": "uint256[]"},
            ],
        }],
    },
]

MAX_UINT256 = 2 ** 256 - 1
