"""Code shipped inside function archives rather than run by the deployer."""
