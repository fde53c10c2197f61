from eth_account import Account


def mk(name: str):
    account = Account.create()
    print(f"{name}_PRIVATE_KEY={account.key.hex()}")
    print(f"{name}_ADDRESS={account.address}")
    print()


if __name__ == "__main__":
    # paste into .env, then fund the address with test USDC
    mk("DEVELOPER")
