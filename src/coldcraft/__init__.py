"""coldcraft: craft, hardware-sign and broadcast EVM and Solana transactions."""
